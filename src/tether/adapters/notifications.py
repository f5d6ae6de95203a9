"""Run lifecycle notification collaborators.

Notifiers are passive: the orchestrator calls them best-effort and logs any
failure instead of propagating it.
"""

from typing import Protocol, runtime_checkable

from tether.schemas.messages import PermissionRequest
from tether.utils.telemetry import get_logger


@runtime_checkable
class RunNotifier(Protocol):
    """Receives run lifecycle events."""

    async def run_started(self, streaming_id: str, session_id: str, cwd: str) -> None: ...

    async def run_status_changed(
        self, streaming_id: str, session_id: str | None, status: str
    ) -> None:
        """Called once per run when it ends.

        Args:
            streaming_id: Run handle
            session_id: Conversation id, None if the run never initialized
            status: completed, cancelled, or failed
        """
        ...

    async def permission_requested(self, request: PermissionRequest) -> None: ...


class LoggingNotifier:
    """Notifier that records lifecycle events in the structured log."""

    def __init__(self) -> None:
        self._logger = get_logger("tether.notifications")

    async def run_started(self, streaming_id: str, session_id: str, cwd: str) -> None:
        self._logger.info(
            "Run started", streaming_id=streaming_id, session_id=session_id, cwd=cwd
        )

    async def run_status_changed(
        self, streaming_id: str, session_id: str | None, status: str
    ) -> None:
        self._logger.info(
            "Run status changed",
            streaming_id=streaming_id,
            session_id=session_id,
            status=status,
        )

    async def permission_requested(self, request: PermissionRequest) -> None:
        self._logger.info(
            "Permission requested",
            request_id=request.id,
            streaming_id=request.streaming_id,
            tool_name=request.tool_name,
        )
