"""Structured error types for conversation orchestration.

Every error carries a machine-readable code and the HTTP-equivalent status
the web adapter surfaces it with. Errors raised before a run is allocated
(validation, not-found) never leave state behind; errors detected mid-flight
(timeouts, engine failures) are raised only after cleanup has run.
"""


class TetherError(Exception):
    """Base exception for orchestration errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
    ):
        """Initialize orchestration error.

        Args:
            message: Human-readable error message
            code: Machine-readable error code (defaults to the class code)
            status_code: HTTP-equivalent status (defaults to the class status)
        """
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        """Serialize error for API responses."""
        return {"error": self.code, "message": self.message}


class InvalidRequestError(TetherError):
    """Error raised when a request is missing or has invalid fields."""

    code = "INVALID_REQUEST"
    status_code = 400

    def __init__(self, code: str, message: str):
        super().__init__(message, code=code)


class ConversationNotFoundError(TetherError):
    """Error raised when a conversation cannot be resolved.

    This occurs when a resume target has no recorded working directory,
    or when neither history nor the active registry knows the conversation.
    """

    code = "CONVERSATION_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or f"Conversation {session_id} not found")


class PermissionNotFoundError(TetherError):
    """Error raised when a permission request is absent or no longer pending."""

    code = "PERMISSION_NOT_FOUND"
    status_code = 404

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__("Permission request not found or not pending")


class RunNotFoundError(TetherError):
    """Error raised when a streaming id does not belong to an active run."""

    code = "RUN_NOT_FOUND"
    status_code = 404

    def __init__(self, streaming_id: str):
        self.streaming_id = streaming_id
        super().__init__(f"No active run for streaming id {streaming_id}")


class SystemInitTimeoutError(TetherError):
    """Error raised when the engine never reports initialization.

    The run has already been cancelled and cleaned up when this is raised.
    """

    code = "SYSTEM_INIT_TIMEOUT"
    status_code = 500

    def __init__(self, streaming_id: str, timeout_seconds: float):
        self.streaming_id = streaming_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timeout waiting for system init after {timeout_seconds:.1f}s"
        )


class EngineExitedError(TetherError):
    """Error raised when the engine stream ends or fails before initialization."""

    code = "ENGINE_EXITED"
    status_code = 500

    def __init__(self, streaming_id: str, reason: str):
        self.streaming_id = streaming_id
        self.reason = reason
        super().__init__(f"Engine exited before system init: {reason}")


class PermissionAbandonedError(TetherError):
    """Error raised into a permission waiter whose run has ended.

    Never surfaced over HTTP: the orchestrator converts it into a deny
    decision for the engine.
    """

    code = "PERMISSION_ABANDONED"
    status_code = 410

    def __init__(self, request_id: str, reason: str = "Conversation ended"):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Permission request {request_id} abandoned: {reason}")


class ServicesNotReadyError(TetherError):
    """Error raised when services are used before initialization completes."""

    code = "SERVICES_NOT_READY"
    status_code = 503

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Services are not ready (state: {state})")
