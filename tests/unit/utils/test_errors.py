"""Unit tests for the error taxonomy."""

import pytest

from tether.utils.errors import (
    ConversationNotFoundError,
    EngineExitedError,
    InvalidRequestError,
    PermissionAbandonedError,
    PermissionNotFoundError,
    RunNotFoundError,
    ServicesNotReadyError,
    SystemInitTimeoutError,
    TetherError,
)


class TestErrorCodes:
    @pytest.mark.parametrize(
        ("error", "code", "status_code"),
        [
            (InvalidRequestError("MISSING_INITIAL_PROMPT", "x"), "MISSING_INITIAL_PROMPT", 400),
            (ConversationNotFoundError("s-1"), "CONVERSATION_NOT_FOUND", 404),
            (PermissionNotFoundError("p-1"), "PERMISSION_NOT_FOUND", 404),
            (RunNotFoundError("run-1"), "RUN_NOT_FOUND", 404),
            (SystemInitTimeoutError("run-1", 60), "SYSTEM_INIT_TIMEOUT", 500),
            (EngineExitedError("run-1", "crashed"), "ENGINE_EXITED", 500),
            (PermissionAbandonedError("p-1"), "PERMISSION_ABANDONED", 410),
            (ServicesNotReadyError("not_ready"), "SERVICES_NOT_READY", 503),
        ],
    )
    def test_code_and_status(self, error: TetherError, code: str, status_code: int) -> None:
        assert isinstance(error, TetherError)
        assert error.code == code
        assert error.status_code == status_code

    def test_base_error_overrides(self) -> None:
        error = TetherError("update failed", code="UPDATE_FAILED", status_code=500)
        assert error.to_dict() == {"error": "UPDATE_FAILED", "message": "update failed"}
        assert str(error) == "update failed"

    def test_base_error_defaults(self) -> None:
        error = TetherError("boom")
        assert error.code == "INTERNAL_ERROR"
        assert error.status_code == 500

    def test_override_does_not_leak_to_class(self) -> None:
        InvalidRequestError("INVALID_ACTION", "bad action")
        assert InvalidRequestError.code == "INVALID_REQUEST"


class TestErrorContext:
    def test_conversation_not_found_keeps_session_id(self) -> None:
        error = ConversationNotFoundError("abc")
        assert error.session_id == "abc"
        assert "abc" in error.message

    def test_conversation_not_found_custom_message(self) -> None:
        error = ConversationNotFoundError("abc", "No working directory recorded")
        assert error.message == "No working directory recorded"

    def test_init_timeout_message(self) -> None:
        error = SystemInitTimeoutError("run-1", 0.5)
        assert error.streaming_id == "run-1"
        assert error.timeout_seconds == 0.5
        assert "0.5s" in error.message

    def test_engine_exited_reason(self) -> None:
        error = EngineExitedError("run-1", "stream ended")
        assert error.reason == "stream ended"
        assert "stream ended" in error.message

    def test_abandoned_default_reason(self) -> None:
        assert PermissionAbandonedError("p-1").reason == "Conversation ended"
