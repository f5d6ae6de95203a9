"""Execution engine backed by the Claude Agent SDK.

Each run is one ``query()`` call. SDK message objects are converted into the
engine-native dict shape of Claude's stream-json output so the rest of the
system never depends on SDK classes.
"""

import dataclasses
from collections.abc import AsyncIterator
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from tether.schemas.types import EngineMessage, EngineRequest
from tether.utils.telemetry import get_logger

_BLOCK_TYPES: dict[type, str] = {
    TextBlock: "text",
    ThinkingBlock: "thinking",
    ToolUseBlock: "tool_use",
    ToolResultBlock: "tool_result",
}


def _block_to_dict(block: Any) -> dict[str, Any]:
    if not dataclasses.is_dataclass(block):
        return dict(block)
    data = dataclasses.asdict(block)
    kind = _BLOCK_TYPES.get(type(block))
    return {"type": kind, **data} if kind else data


def _content_to_wire(content: Any) -> Any:
    if isinstance(content, str):
        return content
    return [_block_to_dict(block) for block in content]


def sdk_message_to_dict(message: Any, session_id: str = "") -> EngineMessage:
    """Convert an SDK message object into an engine-native dict.

    Args:
        message: Message yielded by ``claude_agent_sdk.query``
        session_id: Conversation id seen so far, stamped on messages lacking one

    Returns:
        Dict with a ``type`` key and the stream-json field names
    """
    if isinstance(message, SystemMessage):
        return {**message.data, "type": "system", "subtype": message.subtype}

    if isinstance(message, ResultMessage):
        return {**dataclasses.asdict(message), "type": "result"}

    if isinstance(message, AssistantMessage):
        return {
            "type": "assistant",
            "session_id": session_id,
            "message": {
                "role": "assistant",
                "model": message.model,
                "content": _content_to_wire(message.content),
            },
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }

    if isinstance(message, UserMessage):
        return {
            "type": "user",
            "session_id": session_id,
            "message": {"role": "user", "content": _content_to_wire(message.content)},
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }

    if type(message).__name__ == "StreamEvent":
        return {"type": "stream_event", "session_id": session_id}

    return {"type": type(message).__name__, "session_id": session_id}


class ClaudeAgentEngine:
    """Engine running conversations through ``claude_agent_sdk.query``."""

    def __init__(
        self,
        default_model: str | None = None,
        cli_path: str | None = None,
        extra_options: dict[str, Any] | None = None,
    ):
        """Initialize the Claude engine.

        Args:
            default_model: Model used when a run does not pick one
            cli_path: Claude CLI binary (SDK-bundled binary if None)
            extra_options: Additional ``ClaudeAgentOptions`` fields
        """
        self.default_model = default_model
        self.cli_path = cli_path
        self.extra_options = dict(extra_options or {})
        self._logger = get_logger("tether.adapters.engine.claude")

    def build_options(self, request: EngineRequest) -> ClaudeAgentOptions:
        """Translate a run request into SDK options."""

        async def can_use_tool(
            tool_name: str, tool_input: dict[str, Any], context: Any
        ) -> PermissionResultAllow | PermissionResultDeny:
            decision = await request.can_use_tool(tool_name, tool_input)
            if decision.get("behavior") == "allow":
                return PermissionResultAllow(
                    updated_input=decision.get("updated_input", tool_input)
                )
            return PermissionResultDeny(message=decision.get("message", ""))

        options: dict[str, Any] = {
            **self.extra_options,
            "cwd": request.cwd,
            "can_use_tool": can_use_tool,
        }
        model = request.model or self.default_model
        if model:
            options["model"] = model
        if request.system_prompt:
            options["system_prompt"] = request.system_prompt
        if request.permission_mode:
            options["permission_mode"] = request.permission_mode
        if request.resume:
            options["resume"] = request.resume
        if request.allowed_tools:
            options["allowed_tools"] = list(request.allowed_tools)
        if request.disallowed_tools:
            options["disallowed_tools"] = list(request.disallowed_tools)
        if self.cli_path:
            options["cli_path"] = self.cli_path
        return ClaudeAgentOptions(**options)

    async def run(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        options = self.build_options(request)
        token = request.cancel_token

        # can_use_tool needs a streaming prompt: a plain string prompt closes
        # stdin before permission control requests can be answered.
        async def prompt_stream() -> AsyncIterator[dict[str, Any]]:
            yield {
                "type": "user",
                "message": {"role": "user", "content": request.prompt},
            }

        self._logger.info(
            "Starting Claude query",
            streaming_id=token.streaming_id,
            cwd=request.cwd,
            model=options.model,
            permission_mode=request.permission_mode,
            resume=request.resume,
        )

        session_id = request.resume or ""
        stream = query(prompt=prompt_stream(), options=options)
        try:
            async for message in stream:
                wire = sdk_message_to_dict(message, session_id)
                if wire["type"] == "system" and wire.get("subtype") == "init":
                    session_id = wire.get("session_id") or session_id
                yield wire
                if token.cancelled:
                    self._logger.info(
                        "Claude query cancelled",
                        streaming_id=token.streaming_id,
                        reason=token.reason,
                    )
                    return
        finally:
            await stream.aclose()
