"""Unit tests for engine message adaptation."""

import pytest
from prometheus_client import REGISTRY

from tether.core.adapter import adapt_engine_message
from tether.schemas.events import (
    AssistantEvent,
    ResultEvent,
    SystemInitEvent,
    UserEvent,
    encode_event,
)


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _substitutions(event_type: str, field: str) -> float:
    return _sample(
        "tether_adapter_default_substitutions_total",
        {"event_type": event_type, "field": field},
    )


def _dropped(message_type: str) -> float:
    return _sample(
        "tether_engine_messages_dropped_total", {"message_type": message_type}
    )


class TestSystemMessages:
    def test_full_init_message(self) -> None:
        event = adapt_engine_message(
            {
                "type": "system",
                "subtype": "init",
                "session_id": "session-1",
                "cwd": "/tmp/project",
                "tools": ["Read", "Bash"],
                "mcp_servers": [{"name": "fs", "status": "connected"}],
                "model": "claude-test",
                "permissionMode": "acceptEdits",
                "apiKeySource": "user",
            }
        )

        assert isinstance(event, SystemInitEvent)
        assert event.session_id == "session-1"
        assert event.cwd == "/tmp/project"
        assert event.tools == ["Read", "Bash"]
        assert event.mcp_servers == [{"name": "fs", "status": "connected"}]
        assert event.model == "claude-test"
        assert event.permission_mode == "acceptEdits"
        assert event.api_key_source == "user"

    def test_init_defaults_are_counted(self) -> None:
        before = _substitutions("system", "model")

        event = adapt_engine_message(
            {"type": "system", "subtype": "init", "session_id": "session-1"}
        )

        assert isinstance(event, SystemInitEvent)
        assert event.cwd == ""
        assert event.tools == []
        assert event.mcp_servers == []
        assert event.model == "unknown"
        assert event.permission_mode == "default"
        assert event.api_key_source == "unknown"
        assert _substitutions("system", "model") == before + 1

    def test_missing_session_id_falls_back_to_known_one(self) -> None:
        event = adapt_engine_message(
            {"type": "system", "subtype": "init"}, session_id="known"
        )
        assert isinstance(event, SystemInitEvent)
        assert event.session_id == "known"

    def test_init_wire_format_uses_camel_case_aliases(self) -> None:
        event = adapt_engine_message(
            {"type": "system", "subtype": "init", "session_id": "s"}
        )
        assert event is not None
        wire = encode_event(event)
        assert '"permissionMode":"default"' in wire
        assert '"apiKeySource":"unknown"' in wire
        assert '"subtype":"init"' in wire

    def test_other_system_subtypes_are_dropped(self) -> None:
        before = _dropped("system:compact_boundary")
        event = adapt_engine_message(
            {"type": "system", "subtype": "compact_boundary", "session_id": "s"}
        )
        assert event is None
        assert _dropped("system:compact_boundary") == before + 1


class TestConversationMessages:
    def test_assistant_message_passes_content_through(self) -> None:
        content = {
            "role": "assistant",
            "content": [{"type": "text", "text": "Hello"}],
        }
        event = adapt_engine_message(
            {"type": "assistant", "session_id": "s", "message": content}
        )

        assert isinstance(event, AssistantEvent)
        assert event.message == content
        assert event.parent_tool_use_id is None

    def test_user_message_keeps_parent_tool_use_id(self) -> None:
        event = adapt_engine_message(
            {
                "type": "user",
                "session_id": "s",
                "message": {"role": "user", "content": "hi"},
                "parent_tool_use_id": "toolu_1",
            }
        )

        assert isinstance(event, UserEvent)
        assert event.parent_tool_use_id == "toolu_1"


class TestResultMessages:
    def test_full_result(self) -> None:
        event = adapt_engine_message(
            {
                "type": "result",
                "subtype": "success",
                "session_id": "s",
                "is_error": False,
                "duration_ms": 1200,
                "duration_api_ms": 900,
                "num_turns": 3,
                "result": "done",
                "usage": {
                    "input_tokens": 10,
                    "cache_creation_input_tokens": 1,
                    "cache_read_input_tokens": 2,
                    "output_tokens": 20,
                    "server_tool_use": {"web_search_requests": 4},
                },
            }
        )

        assert isinstance(event, ResultEvent)
        assert event.duration_ms == 1200
        assert event.duration_api_ms == 900
        assert event.num_turns == 3
        assert event.result == "done"
        assert event.usage.input_tokens == 10
        assert event.usage.output_tokens == 20
        assert event.usage.server_tool_use.web_search_requests == 4

    def test_result_defaults(self) -> None:
        before = _substitutions("result", "usage")

        event = adapt_engine_message({"type": "result", "session_id": "s"})

        assert isinstance(event, ResultEvent)
        assert event.subtype == "success"
        assert not event.is_error
        assert event.duration_ms == 0
        assert event.duration_api_ms == 0
        assert event.num_turns == 0
        assert event.usage.input_tokens == 0
        assert event.usage.server_tool_use.web_search_requests == 0
        assert _substitutions("result", "usage") == before + 1

    def test_partial_usage_fills_missing_counters(self) -> None:
        event = adapt_engine_message(
            {"type": "result", "session_id": "s", "usage": {"input_tokens": 5}}
        )
        assert isinstance(event, ResultEvent)
        assert event.usage.input_tokens == 5
        assert event.usage.output_tokens == 0
        assert event.usage.cache_read_input_tokens == 0

    def test_error_result(self) -> None:
        event = adapt_engine_message(
            {
                "type": "result",
                "subtype": "error_max_turns",
                "session_id": "s",
                "is_error": True,
            }
        )
        assert isinstance(event, ResultEvent)
        assert event.is_error
        assert event.subtype == "error_max_turns"


class TestDroppedMessages:
    @pytest.mark.parametrize("kind", ["stream_event", "tool_progress", "auth_status"])
    def test_known_auxiliary_kinds_are_dropped(self, kind: str) -> None:
        before = _dropped(kind)
        assert adapt_engine_message({"type": kind, "session_id": "s"}) is None
        assert _dropped(kind) == before + 1

    def test_unknown_kind_is_dropped(self) -> None:
        before = _dropped("hologram")
        assert adapt_engine_message({"type": "hologram"}) is None
        assert _dropped("hologram") == before + 1

    def test_message_without_type_is_dropped(self) -> None:
        assert adapt_engine_message({"session_id": "s"}) is None
