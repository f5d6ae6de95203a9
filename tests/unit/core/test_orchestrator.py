"""Unit tests for the ConversationOrchestrator.

Tests cover start request validation, run start and init handling, resume
enrichment, tool permission interception, stop and cleanup, and engine
failures before and after initialization.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from tether.adapters.engine import ScriptedEngine, ToolCall, WaitForCancel, assistant_text
from tether.adapters.history import InMemoryHistoryReader
from tether.core.broadcaster import EventBroadcaster
from tether.core.orchestrator import (
    ConversationOrchestrator,
    OrchestratorConfig,
    validate_start_request,
)
from tether.core.permissions import (
    CONVERSATION_ENDED_REASON,
    PERMISSION_DENIED_REASON,
    PERMISSION_TIMEOUT_REASON,
    PermissionArbiter,
)
from tether.core.status import SessionStatusRegistry
from tether.schemas.events import parse_event
from tether.schemas.messages import (
    ConversationMessage,
    PermissionRequest,
    StartConversationRequest,
)
from tether.schemas.types import EngineMessage, EngineRequest
from tether.storage import InMemorySessionInfoStore
from tether.utils.errors import (
    ConversationNotFoundError,
    EngineExitedError,
    InvalidRequestError,
    SystemInitTimeoutError,
)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    async def run_started(self, streaming_id: str, session_id: str, cwd: str) -> None:
        self.calls.append(("run_started", (streaming_id, session_id, cwd)))

    async def run_status_changed(
        self, streaming_id: str, session_id: str | None, status: str
    ) -> None:
        self.calls.append(("run_status_changed", (streaming_id, session_id, status)))

    async def permission_requested(self, request: PermissionRequest) -> None:
        self.calls.append(("permission_requested", (request,)))

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FailingNotifier:
    async def run_started(self, *args: Any) -> None:
        raise RuntimeError("notifier down")

    async def run_status_changed(self, *args: Any) -> None:
        raise RuntimeError("notifier down")

    async def permission_requested(self, *args: Any) -> None:
        raise RuntimeError("notifier down")


class FixedGit:
    def __init__(self, head: str | None = "abc123") -> None:
        self.head = head
        self.calls: list[str] = []

    async def get_current_commit(self, cwd: str) -> str | None:
        self.calls.append(cwd)
        return self.head


class GatedEngine:
    """Engine that holds back its init message until the gate opens."""

    def __init__(self, session_id: str = "gated-session") -> None:
        self.gate = asyncio.Event()
        self.session_id = session_id

    async def run(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        await self.gate.wait()
        yield {
            "type": "system",
            "subtype": "init",
            "session_id": self.session_id,
            "cwd": request.cwd,
        }
        await request.cancel_token.wait_cancelled()


class RecordingSink:
    def __init__(self) -> None:
        self.frames: list[bytes] = []
        self.closed = False

    def send(self, frame: bytes) -> None:
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

    def event_types(self) -> list[str]:
        return [
            parse_event(frame[len(b"data: ") :].strip()).type
            for frame in self.frames
            if frame.startswith(b"data: ")
        ]


class Harness:
    """Orchestrator wired to in-memory collaborators."""

    def __init__(self, engine: Any, **config: Any) -> None:
        config.setdefault("init_timeout_seconds", 2.0)
        config.setdefault("stop_grace_seconds", 0.5)
        self.engine = engine
        self.config = OrchestratorConfig(**config)
        self.permissions = PermissionArbiter()
        self.registry = SessionStatusRegistry()
        self.broadcaster = EventBroadcaster(heartbeat_interval=30)
        self.history = InMemoryHistoryReader()
        self.session_info = InMemorySessionInfoStore()
        self.git = FixedGit()
        self.notifier = RecordingNotifier()
        self.orchestrator = ConversationOrchestrator(
            config=self.config,
            engine=engine,
            permissions=self.permissions,
            status_registry=self.registry,
            broadcaster=self.broadcaster,
            history=self.history,
            session_info=self.session_info,
            git=self.git,
            notifier=self.notifier,
        )

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        await self.broadcaster.shutdown()


@pytest.fixture
async def make_harness():
    harnesses: list[Harness] = []

    def factory(engine: Any, **config: Any) -> Harness:
        harness = Harness(engine, **config)
        harnesses.append(harness)
        return harness

    yield factory
    for harness in harnesses:
        await harness.close()


def _start(cwd: str = "/tmp/project", prompt: str = "hi", **fields: Any) -> StartConversationRequest:
    return StartConversationRequest(working_directory=cwd, initial_prompt=prompt, **fields)


class TestStartRequestValidation:
    def test_missing_working_directory(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_start_request(StartConversationRequest(initial_prompt="hi"))
        assert exc_info.value.code == "MISSING_WORKING_DIRECTORY"

    def test_working_directory_checked_before_prompt(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_start_request(StartConversationRequest())
        assert exc_info.value.code == "MISSING_WORKING_DIRECTORY"

    def test_resume_does_not_need_working_directory(self) -> None:
        validate_start_request(
            StartConversationRequest(resumed_session_id="abc", initial_prompt="hi")
        )

    def test_missing_prompt(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_start_request(StartConversationRequest(working_directory="/tmp"))
        assert exc_info.value.code == "MISSING_INITIAL_PROMPT"
        assert exc_info.value.status_code == 400

    def test_invalid_permission_mode(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_start_request(_start(permission_mode="yolo"))
        assert exc_info.value.code == "INVALID_PERMISSION_MODE"

    @pytest.mark.parametrize("mode", ["default", "acceptEdits", "bypassPermissions", "plan"])
    def test_valid_permission_modes(self, mode: str) -> None:
        validate_start_request(_start(permission_mode=mode))

    def test_camel_case_payload(self) -> None:
        request = StartConversationRequest.model_validate(
            {"workingDirectory": "/tmp/x", "initialPrompt": "hi", "permissionMode": "plan"}
        )
        assert request.working_directory == "/tmp/x"
        assert request.permission_mode == "plan"


class TestRunStart:
    @pytest.mark.asyncio
    async def test_start_returns_handle_and_registers(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], session_id="s-1")
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())

        assert run.stream_url == f"/api/stream/{run.streaming_id}"
        assert run.init_event.session_id == "s-1"
        assert run.init_event.cwd == "/tmp/project"
        assert harness.orchestrator.is_run_active(run.streaming_id)
        assert harness.registry.get_conversation_status("s-1") == "ongoing"
        assert harness.registry.get_streaming_id("s-1") == run.streaming_id
        assert harness.orchestrator.active_run_count == 1

    @pytest.mark.asyncio
    async def test_engine_request_carries_overrides(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()])
        harness = make_harness(engine, default_model="claude-default")

        await harness.orchestrator.start_run(
            _start(
                system_prompt="be brief",
                permission_mode="acceptEdits",
                allowed_tools=["Bash"],
                disallowed_tools=["Write"],
            )
        )

        request = engine.requests[0]
        assert request.prompt == "hi"
        assert request.cwd == "/tmp/project"
        assert request.model == "claude-default"
        assert request.system_prompt == "be brief"
        assert request.permission_mode == "acceptEdits"
        assert request.allowed_tools == ["Bash"]
        assert request.disallowed_tools == ["Write"]
        assert request.resume is None

    @pytest.mark.asyncio
    async def test_streaming_ids_are_unique(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()]))
        first = await harness.orchestrator.start_run(_start())
        second = await harness.orchestrator.start_run(_start())

        assert first.streaming_id != second.streaming_id
        assert harness.orchestrator.active_run_count == 2

    @pytest.mark.asyncio
    async def test_session_info_recorded_after_init(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()], session_id="s-1"))

        await harness.orchestrator.start_run(_start(permission_mode="plan"))

        info = await harness.session_info.get_session_info("s-1")
        assert info.initial_commit_head == "abc123"
        assert info.permission_mode == "plan"
        assert harness.git.calls == ["/tmp/project"]

    @pytest.mark.asyncio
    async def test_session_info_failures_are_tolerated(self, make_harness) -> None:
        class BrokenGit:
            async def get_current_commit(self, cwd: str) -> str | None:
                raise RuntimeError("git exploded")

        harness = make_harness(ScriptedEngine(script=[WaitForCancel()]))
        harness.orchestrator.git = BrokenGit()

        run = await harness.orchestrator.start_run(_start())
        assert harness.orchestrator.is_run_active(run.streaming_id)

    @pytest.mark.asyncio
    async def test_notifications(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()], session_id="s-1"))

        run = await harness.orchestrator.start_run(_start())
        await harness.orchestrator.stop_run(run.streaming_id)

        assert harness.notifier.calls[0] == (
            "run_started",
            (run.streaming_id, "s-1", "/tmp/project"),
        )
        assert ("run_status_changed", (run.streaming_id, "s-1", "cancelled")) in (
            harness.notifier.calls
        )

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_break_runs(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()]))
        harness.orchestrator.notifier = FailingNotifier()

        run = await harness.orchestrator.start_run(_start())
        assert await harness.orchestrator.stop_run(run.streaming_id)


class TestRunCompletion:
    @pytest.mark.asyncio
    async def test_subscriber_sees_events_in_engine_order(self, make_harness) -> None:
        engine = ScriptedEngine(
            script=[assistant_text("one"), assistant_text("two")], step_delay=0.05
        )
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())
        sink = RecordingSink()
        harness.broadcaster.attach(run.streaming_id, sink)

        await wait_until(lambda: sink.closed)

        assert sink.event_types() == [
            "connected",
            "assistant",
            "assistant",
            "result",
            "closed",
        ]
        assert not harness.orchestrator.is_run_active(run.streaming_id)

    @pytest.mark.asyncio
    async def test_completed_run_is_unregistered(self, make_harness) -> None:
        engine = ScriptedEngine(script=[assistant_text("done")], session_id="s-1")
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())
        await wait_until(lambda: not harness.orchestrator.is_run_active(run.streaming_id))

        assert harness.registry.get_conversation_status("s-1") == "completed"
        await wait_until(lambda: "run_status_changed" in harness.notifier.names())
        assert ("run_status_changed", (run.streaming_id, "s-1", "completed")) in (
            harness.notifier.calls
        )

    @pytest.mark.asyncio
    async def test_engine_failure_after_init(self, make_harness) -> None:
        engine = ScriptedEngine(
            script=[assistant_text("one"), assistant_text("two")],
            step_delay=0.05,
            fail_after=1,
            fail_message="engine crashed",
        )
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())
        sink = RecordingSink()
        harness.broadcaster.attach(run.streaming_id, sink)
        await wait_until(lambda: sink.closed)

        assert sink.event_types() == ["connected", "assistant", "error", "closed"]
        error = parse_event(sink.frames[-2][len(b"data: ") :].strip())
        assert error.error == "engine crashed"
        assert error.streaming_id == run.streaming_id
        assert not harness.orchestrator.is_run_active(run.streaming_id)
        assert harness.registry.active_count == 0


class TestInitFailures:
    @pytest.mark.asyncio
    async def test_init_timeout_cleans_up(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], emit_init=False)
        harness = make_harness(engine, init_timeout_seconds=0.05)

        with pytest.raises(SystemInitTimeoutError) as exc_info:
            await harness.orchestrator.start_run(_start())

        assert exc_info.value.code == "SYSTEM_INIT_TIMEOUT"
        assert harness.orchestrator.active_run_count == 0
        assert harness.registry.active_count == 0
        assert engine.requests[0].cancel_token.cancelled

    @pytest.mark.asyncio
    async def test_engine_ending_before_init(self, make_harness) -> None:
        engine = ScriptedEngine(script=[], emit_init=False, emit_result=False)
        harness = make_harness(engine)

        with pytest.raises(EngineExitedError):
            await harness.orchestrator.start_run(_start())

        assert harness.orchestrator.active_run_count == 0

    @pytest.mark.asyncio
    async def test_engine_raising_before_init(self, make_harness) -> None:
        engine = ScriptedEngine(
            script=[assistant_text("x")],
            emit_init=False,
            fail_after=0,
            fail_message="cli not found",
        )
        harness = make_harness(engine, init_timeout_seconds=5)

        with pytest.raises(EngineExitedError) as exc_info:
            await harness.orchestrator.start_run(_start())

        assert "cli not found" in exc_info.value.message
        assert harness.orchestrator.active_run_count == 0

    @pytest.mark.asyncio
    async def test_stop_before_init(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], emit_init=False)
        harness = make_harness(engine, init_timeout_seconds=5)
        orchestrator = harness.orchestrator

        starting = asyncio.create_task(orchestrator.start_run(_start()))
        await wait_until(lambda: orchestrator.active_run_count == 1)
        [streaming_id] = orchestrator.get_active_runs()

        assert await orchestrator.stop_run(streaming_id) is True

        with pytest.raises(EngineExitedError) as exc_info:
            await asyncio.wait_for(starting, 1)
        assert exc_info.value.code == "ENGINE_EXITED"
        assert exc_info.value.reason == "Run stopped before initialization"
        assert orchestrator.active_run_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_before_init(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], emit_init=False)
        harness = make_harness(engine, init_timeout_seconds=5)
        orchestrator = harness.orchestrator

        starting = asyncio.create_task(orchestrator.start_run(_start()))
        await wait_until(lambda: orchestrator.active_run_count == 1)

        await orchestrator.shutdown()

        with pytest.raises(EngineExitedError):
            await asyncio.wait_for(starting, 1)

    @pytest.mark.asyncio
    async def test_caller_cancellation_still_propagates(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], emit_init=False)
        harness = make_harness(engine, init_timeout_seconds=5)
        orchestrator = harness.orchestrator

        starting = asyncio.create_task(orchestrator.start_run(_start()))
        await wait_until(lambda: orchestrator.active_run_count == 1)

        starting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await starting
        await orchestrator.shutdown()


class TestResume:
    @pytest.mark.asyncio
    async def test_unknown_resume_target(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()])
        harness = make_harness(engine)

        with pytest.raises(ConversationNotFoundError):
            await harness.orchestrator.start_run(
                StartConversationRequest(resumed_session_id="abc", initial_prompt="hi")
            )

        assert harness.orchestrator.active_run_count == 0
        assert harness.registry.active_count == 0
        assert engine.requests == []

    @pytest.mark.asyncio
    async def test_resume_without_history_collaborator(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()]))
        harness.orchestrator.history = None

        with pytest.raises(ConversationNotFoundError):
            await harness.orchestrator.start_run(
                StartConversationRequest(resumed_session_id="abc", initial_prompt="hi")
            )

    @pytest.mark.asyncio
    async def test_resume_inherits_directory_messages_and_mode(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], session_id="new")
        harness = make_harness(engine)
        previous = ConversationMessage(
            uuid="m1",
            type="assistant",
            message={"role": "assistant", "content": "earlier"},
            session_id="old",
        )
        harness.history.add_conversation("old", "/tmp/old-project", messages=[previous])
        await harness.session_info.update_session_info("old", permission_mode="acceptEdits")

        run = await harness.orchestrator.start_run(
            StartConversationRequest(resumed_session_id="old", initial_prompt="continue")
        )

        request = engine.requests[0]
        assert request.cwd == "/tmp/old-project"
        assert request.resume == "old"
        assert request.permission_mode == "acceptEdits"
        assert run.init_event.cwd == "/tmp/old-project"

        details = harness.registry.get_active_conversation_details("new")
        assert details is not None
        assert [m.uuid for m in details.messages] == [
            "m1",
            f"active-{run.streaming_id}-user",
        ]

        old_info = await harness.session_info.get_session_info("old")
        assert old_info.continuation_session_id == "new"

    @pytest.mark.asyncio
    async def test_explicit_directory_wins_over_history(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()])
        harness = make_harness(engine)
        harness.history.add_conversation("old", "/tmp/old-project")

        await harness.orchestrator.start_run(
            _start(cwd="/tmp/elsewhere", resumed_session_id="old", permission_mode="plan")
        )

        assert engine.requests[0].cwd == "/tmp/elsewhere"
        assert engine.requests[0].permission_mode == "plan"

    @pytest.mark.asyncio
    async def test_resume_target_is_pending_until_init(self, make_harness) -> None:
        engine = GatedEngine(session_id="new")
        harness = make_harness(engine)
        harness.history.add_conversation("old", "/tmp/old-project")

        starting = asyncio.create_task(
            harness.orchestrator.start_run(
                StartConversationRequest(resumed_session_id="old", initial_prompt="go")
            )
        )
        await wait_until(lambda: harness.orchestrator.active_run_count == 1)
        assert harness.registry.get_conversation_status("old") == "pending"

        engine.gate.set()
        run = await starting

        assert harness.registry.get_conversation_status("old") == "completed"
        assert harness.registry.get_conversation_status("new") == "ongoing"
        await harness.orchestrator.stop_run(run.streaming_id)


class TestToolPermissions:
    @pytest.mark.asyncio
    async def test_read_only_tool_is_auto_approved(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Read", {"file_path": "/tmp/a"})])
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())
        await wait_until(lambda: not harness.orchestrator.is_run_active(run.streaming_id))

        assert engine.executed_tools == [("Read", {"file_path": "/tmp/a"})]
        assert "permission_requested" not in harness.notifier.names()

    @pytest.mark.asyncio
    async def test_denial_reason_reaches_engine(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Bash", {"command": "rm -rf build"})])
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())
        await wait_until(lambda: len(harness.permissions.get_permission_requests()) == 1)
        request = harness.permissions.get_permission_requests()[0]
        assert request.streaming_id == run.streaming_id
        assert request.tool_name == "Bash"
        assert request.tool_input == {"command": "rm -rf build"}

        assert harness.permissions.update_permission_status(
            request.id, "denied", deny_reason="no"
        )
        await wait_until(lambda: len(engine.decisions) == 1)

        assert engine.decisions[0].result == {"behavior": "deny", "message": "no"}
        assert engine.executed_tools == []
        assert "permission_requested" in harness.notifier.names()

    @pytest.mark.asyncio
    async def test_denial_without_reason(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Bash", {"command": "ls"})])
        harness = make_harness(engine)

        await harness.orchestrator.start_run(_start())
        await wait_until(lambda: harness.permissions.pending_count == 1)
        request = harness.permissions.get_permission_requests()[0]
        harness.permissions.update_permission_status(request.id, "denied")
        await wait_until(lambda: len(engine.decisions) == 1)

        assert engine.decisions[0].result["message"] == PERMISSION_DENIED_REASON

    @pytest.mark.asyncio
    async def test_approval_with_modified_input(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Bash", {"command": "rm -rf /"})])
        harness = make_harness(engine)

        await harness.orchestrator.start_run(_start())
        await wait_until(lambda: harness.permissions.pending_count == 1)
        request = harness.permissions.get_permission_requests()[0]
        harness.permissions.update_permission_status(
            request.id, "approved", modified_input={"command": "ls"}
        )
        await wait_until(lambda: len(engine.executed_tools) == 1)

        assert engine.executed_tools == [("Bash", {"command": "ls"})]

    @pytest.mark.asyncio
    async def test_approval_keeps_original_input(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Edit", {"file_path": "a.py"})])
        harness = make_harness(engine)

        await harness.orchestrator.start_run(_start())
        await wait_until(lambda: harness.permissions.pending_count == 1)
        request = harness.permissions.get_permission_requests()[0]
        harness.permissions.update_permission_status(request.id, "approved")
        await wait_until(lambda: len(engine.executed_tools) == 1)

        assert engine.executed_tools == [("Edit", {"file_path": "a.py"})]

    @pytest.mark.asyncio
    async def test_permission_timeout_denies(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Bash", {"command": "ls"})])
        harness = make_harness(engine, permission_timeout_seconds=0.05)

        run = await harness.orchestrator.start_run(_start())
        await wait_until(lambda: len(engine.decisions) == 1)

        assert engine.decisions[0].result == {
            "behavior": "deny",
            "message": PERMISSION_TIMEOUT_REASON,
        }
        assert engine.executed_tools == []
        await wait_until(lambda: not harness.orchestrator.is_run_active(run.streaming_id))

    @pytest.mark.asyncio
    async def test_stop_abandons_only_that_runs_waiters(self, make_harness) -> None:
        engine = ScriptedEngine(script=[ToolCall("Bash", {"command": "ls"}), WaitForCancel()])
        harness = make_harness(engine)

        first = await harness.orchestrator.start_run(_start())
        second = await harness.orchestrator.start_run(_start())
        await wait_until(lambda: harness.permissions.pending_count == 2)

        assert await harness.orchestrator.stop_run(first.streaming_id)
        await wait_until(lambda: len(engine.decisions) == 1)

        assert engine.decisions[0].result == {
            "behavior": "deny",
            "message": CONVERSATION_ENDED_REASON,
        }
        remaining = harness.permissions.get_permission_requests(status="pending")
        assert [r.streaming_id for r in remaining] == [second.streaming_id]
        assert harness.permissions.get_permission_requests(
            streaming_id=first.streaming_id
        ) == []


class TestStopRun:
    @pytest.mark.asyncio
    async def test_stop_cleans_up_immediately(self, make_harness) -> None:
        engine = ScriptedEngine(script=[WaitForCancel()], session_id="s-1")
        harness = make_harness(engine)

        run = await harness.orchestrator.start_run(_start())
        record = harness.orchestrator.get_run(run.streaming_id)
        assert record is not None and record.task is not None
        sink = RecordingSink()
        harness.broadcaster.attach(run.streaming_id, sink)

        assert await harness.orchestrator.stop_run(run.streaming_id)

        assert not harness.orchestrator.is_run_active(run.streaming_id)
        assert harness.registry.get_conversation_status("s-1") == "completed"
        assert sink.closed
        assert sink.event_types() == ["connected", "closed"]
        assert engine.requests[0].cancel_token.reason == "Stopped by user"

        await asyncio.wait_for(record.task, 1)

    @pytest.mark.asyncio
    async def test_stop_twice_and_unknown(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()]))
        run = await harness.orchestrator.start_run(_start())

        assert await harness.orchestrator.stop_run(run.streaming_id)
        assert not await harness.orchestrator.stop_run(run.streaming_id)
        assert not await harness.orchestrator.stop_run("unknown")

    @pytest.mark.asyncio
    async def test_stop_force_cancels_stuck_engine(self, make_harness) -> None:
        class StuckEngine:
            async def run(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
                yield {"type": "system", "subtype": "init", "session_id": "stuck"}
                await asyncio.sleep(3600)

        harness = make_harness(StuckEngine(), stop_grace_seconds=0.05)
        run = await harness.orchestrator.start_run(_start())
        record = harness.orchestrator.get_run(run.streaming_id)
        assert record is not None and record.task is not None

        await harness.orchestrator.stop_run(run.streaming_id)
        await asyncio.wait_for(record.task, 1)

        assert record.task.done()

    @pytest.mark.asyncio
    async def test_shutdown_stops_all_runs(self, make_harness) -> None:
        harness = make_harness(ScriptedEngine(script=[WaitForCancel()]))
        await harness.orchestrator.start_run(_start())
        await harness.orchestrator.start_run(_start())

        await harness.orchestrator.shutdown()

        assert harness.orchestrator.active_run_count == 0
        assert harness.orchestrator.get_active_runs() == []
        assert harness.registry.active_count == 0
