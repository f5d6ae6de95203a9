"""Core type definitions shared between the orchestrator and execution engines."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, TypedDict

# Engine-native messages are plain dicts keyed by "type" (and "subtype" for
# system messages), mirroring the engine's JSON message stream.
EngineMessage = dict[str, Any]

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]

VALID_PERMISSION_MODES: tuple[str, ...] = (
    "acceptEdits",
    "bypassPermissions",
    "default",
    "plan",
)


class ToolPermissionResult(TypedDict, total=False):
    """Decision handed back to the engine for one proposed tool invocation."""

    behavior: Annotated[Literal["allow", "deny"], "Whether the tool may run"]
    updated_input: Annotated[
        dict[str, Any], "Input the tool runs with (allow only, may be modified)"
    ]
    message: Annotated[str, "Human-readable reason (deny only)"]


ToolPermissionCallback = Callable[
    [str, dict[str, Any]], Awaitable[ToolPermissionResult]
]


class CancelToken:
    """Token for signalling cancellation of one agent run.

    Shared between the public stop call and the background execution loop.
    Cancellation is cooperative: the loop observes it at message boundaries
    and engines may await ``wait_cancelled`` to abort sooner.
    """

    def __init__(self, streaming_id: str) -> None:
        """Initialize a new cancel token.

        Args:
            streaming_id: Run handle this token belongs to

        Raises:
            ValueError: If streaming_id is empty
        """
        if not streaming_id.strip():
            raise ValueError("streaming_id cannot be empty")

        self.streaming_id = streaming_id
        self._cancelled = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Check if the token has been cancelled."""
        return self._cancelled.is_set()

    def cancel(self, reason: str) -> bool:
        """Cancel the token with a specific reason.

        Only the first call has an effect.

        Args:
            reason: Human-readable reason for cancellation

        Returns:
            True if this call cancelled the token, False if it was already cancelled

        Raises:
            ValueError: If reason is empty
        """
        if not reason.strip():
            raise ValueError("Cancellation reason cannot be empty")
        if self._cancelled.is_set():
            return False

        self.reason = reason
        self._cancelled.set()
        return True

    async def wait_cancelled(self) -> None:
        """Wait until token is cancelled."""
        await self._cancelled.wait()

    def __repr__(self) -> str:
        status = "cancelled" if self.cancelled else "active"
        reason_info = f", reason={self.reason}" if self.reason else ""
        return f"CancelToken(streaming_id={self.streaming_id}, status={status}{reason_info})"


@dataclass
class EngineRequest:
    """Everything an execution engine needs to start one run."""

    prompt: str
    cwd: str
    cancel_token: CancelToken
    can_use_tool: ToolPermissionCallback
    model: str | None = None
    system_prompt: str | None = None
    permission_mode: str | None = None
    resume: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
