"""Scripted engine that replays a fixed message sequence.

Used by tests and local demos in place of a real agent. Tool calls in the
script go through the run's permission callback exactly like a real engine's
would, and the recorded decisions can be inspected afterwards.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from tether.schemas.types import EngineMessage, EngineRequest, ToolPermissionResult
from tether.utils.telemetry import get_logger


@dataclass
class ToolCall:
    """Script step proposing a tool invocation."""

    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str = field(default_factory=lambda: f"toolu_{uuid.uuid4().hex[:12]}")


@dataclass
class WaitForCancel:
    """Script step that blocks until the run is cancelled."""


@dataclass
class ToolDecision:
    """Permission outcome observed by the engine for one tool call."""

    tool_name: str
    tool_input: dict[str, Any]
    result: ToolPermissionResult

    @property
    def allowed(self) -> bool:
        return self.result.get("behavior") == "allow"


ScriptStep = EngineMessage | ToolCall | WaitForCancel


def assistant_text(text: str) -> EngineMessage:
    """Assistant message with a single text block."""
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        "parent_tool_use_id": None,
    }


class ScriptedEngine:
    """Engine replaying a script of messages, tool calls and pauses.

    Each run emits a system init message, then the script, then a success
    result. ``fail_after`` raises after that many script steps instead.
    """

    def __init__(
        self,
        script: list[ScriptStep] | None = None,
        session_id: str | None = None,
        tools: list[str] | None = None,
        step_delay: float = 0.0,
        emit_init: bool = True,
        emit_result: bool = True,
        fail_after: int | None = None,
        fail_message: str = "scripted engine failure",
    ):
        """Initialize scripted engine.

        Args:
            script: Steps replayed after the init message
            session_id: Conversation id reported at init (random per run if None)
            tools: Tool list reported at init
            step_delay: Seconds to sleep before each step
            emit_init: Whether to report initialization at all
            emit_result: Whether to finish with a result message
            fail_after: Raise after this many steps
            fail_message: Message of the raised error
        """
        self.script = list(script or [])
        self.session_id = session_id
        self.tools = tools if tools is not None else ["Read", "Grep", "Glob", "Bash", "Edit", "Write"]
        self.step_delay = step_delay
        self.emit_init = emit_init
        self.emit_result = emit_result
        self.fail_after = fail_after
        self.fail_message = fail_message

        self.requests: list[EngineRequest] = []
        self.decisions: list[ToolDecision] = []
        self.executed_tools: list[tuple[str, dict[str, Any]]] = []
        self._logger = get_logger("tether.adapters.engine.scripted")

    async def run(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        self.requests.append(request)
        token = request.cancel_token
        session_id = self.session_id or str(uuid.uuid4())

        self._logger.info(
            "Starting scripted run",
            streaming_id=token.streaming_id,
            session_id=session_id,
            steps=len(self.script),
        )

        if self.emit_init:
            yield {
                "type": "system",
                "subtype": "init",
                "session_id": session_id,
                "cwd": request.cwd,
                "tools": list(self.tools),
                "mcp_servers": [],
                "model": request.model or "scripted",
                "permissionMode": request.permission_mode or "default",
                "apiKeySource": "none",
            }

        for index, step in enumerate(self.script):
            if self.fail_after is not None and index >= self.fail_after:
                raise RuntimeError(self.fail_message)
            if self.step_delay:
                await asyncio.sleep(self.step_delay)
            if token.cancelled:
                self._logger.info(
                    "Scripted run cancelled",
                    streaming_id=token.streaming_id,
                    reason=token.reason,
                    steps_done=index,
                )
                return

            if isinstance(step, WaitForCancel):
                await token.wait_cancelled()
                return
            if isinstance(step, ToolCall):
                async for message in self._run_tool(step, request, session_id):
                    yield message
                continue

            yield {"session_id": session_id, **step}

        if self.fail_after is not None and self.fail_after >= len(self.script):
            raise RuntimeError(self.fail_message)

        if self.emit_result and not token.cancelled:
            yield {
                "type": "result",
                "subtype": "success",
                "session_id": session_id,
                "is_error": False,
                "duration_ms": 0,
                "duration_api_ms": 0,
                "num_turns": len(self.script) + 1,
                "result": "done",
                "usage": {"input_tokens": 0, "output_tokens": 0},
            }

    async def _run_tool(
        self, call: ToolCall, request: EngineRequest, session_id: str
    ) -> AsyncIterator[EngineMessage]:
        yield {
            "type": "assistant",
            "session_id": session_id,
            "message": {
                "role": "assistant",
                "content": [
                    {
                        "type": "tool_use",
                        "id": call.tool_use_id,
                        "name": call.tool_name,
                        "input": call.tool_input,
                    }
                ],
            },
            "parent_tool_use_id": None,
        }

        result = await request.can_use_tool(call.tool_name, dict(call.tool_input))
        self.decisions.append(
            ToolDecision(tool_name=call.tool_name, tool_input=call.tool_input, result=result)
        )

        if result.get("behavior") == "allow":
            tool_input = result.get("updated_input", call.tool_input)
            self.executed_tools.append((call.tool_name, tool_input))
            content: Any = f"{call.tool_name} ran with {tool_input}"
            is_error = False
        else:
            content = result.get("message", "denied")
            is_error = True

        yield {
            "type": "user",
            "session_id": session_id,
            "message": {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": call.tool_use_id,
                        "content": content,
                        "is_error": is_error,
                    }
                ],
            },
            "parent_tool_use_id": None,
        }
