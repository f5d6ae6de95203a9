"""Conversation orchestrator: lifecycle of agent runs.

The orchestrator launches one background execution per run, adapts the
engine's messages into canonical events, gates tool use through the
permission arbiter, and keeps the status registry and broadcaster in step
with each run's lifecycle.

A run moves through: allocated -> initialized (conversation id known,
registered) -> finished (result, error, or stop). Cleanup on finish is
idempotent and happens exactly once whichever path gets there first.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from tether.adapters.engine.base import AgentEngine
from tether.adapters.history.base import HistoryReader
from tether.adapters.notifications import RunNotifier
from tether.core.adapter import adapt_engine_message
from tether.core.broadcaster import EventBroadcaster
from tether.core.permissions import (
    CONVERSATION_ENDED_REASON,
    PERMISSION_DENIED_REASON,
    PERMISSION_TIMEOUT_REASON,
    PermissionArbiter,
)
from tether.core.status import ActiveSessionMetadata, SessionStatusRegistry
from tether.schemas.events import ErrorEvent, ResultEvent, SystemInitEvent
from tether.schemas.messages import ConversationMessage, StartConversationRequest
from tether.schemas.types import (
    VALID_PERMISSION_MODES,
    CancelToken,
    EngineRequest,
    ToolPermissionResult,
)
from tether.storage.session_info import SessionInfoBackend
from tether.utils.errors import (
    ConversationNotFoundError,
    EngineExitedError,
    InvalidRequestError,
    PermissionAbandonedError,
    PermissionNotFoundError,
    SystemInitTimeoutError,
)
from tether.utils.git import GitInspector
from tether.utils.telemetry import (
    async_performance_timer,
    get_logger,
    record_permission_outcome,
    record_run_finished,
    record_run_started,
    update_active_runs,
)

READ_ONLY_TOOLS: tuple[str, ...] = ("Read", "Grep", "Glob", "LS", "LSP")


class OrchestratorConfig:
    """Configuration for the ConversationOrchestrator."""

    def __init__(
        self,
        init_timeout_seconds: float = 60.0,
        permission_timeout_seconds: float = 60 * 60.0,
        stop_grace_seconds: float = 5.0,
        default_model: str | None = "claude-sonnet-4-5",
        read_only_tools: tuple[str, ...] | list[str] = READ_ONLY_TOOLS,
        stream_url_template: str = "/api/stream/{streaming_id}",
    ):
        """Initialize orchestrator configuration.

        Args:
            init_timeout_seconds: Deadline for the engine's init message
            permission_timeout_seconds: Deadline for a permission decision
            stop_grace_seconds: Time a stopped run gets to wind down before
                its execution task is cancelled
            default_model: Model used when a run does not choose one
            read_only_tools: Tools auto-approved without a permission request
            stream_url_template: Stream location returned from run start
        """
        self.init_timeout_seconds = init_timeout_seconds
        self.permission_timeout_seconds = permission_timeout_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.default_model = default_model
        self.read_only_tools = frozenset(read_only_tools)
        self.stream_url_template = stream_url_template

    def to_dict(self) -> dict[str, Any]:
        data = dict(vars(self))
        data["read_only_tools"] = sorted(self.read_only_tools)
        return data


@dataclass(eq=False)
class RunRecord:
    """In-memory state of one execution attempt."""

    streaming_id: str
    cwd: str
    initial_prompt: str
    model: str | None
    permission_mode: str | None
    cancel_token: CancelToken
    resumed_session_id: str | None = None
    inherited_messages: list[ConversationMessage] = field(default_factory=list)
    session_id: str | None = None
    started_at: float = field(default_factory=time.time)
    task: asyncio.Task[None] | None = None
    init_future: asyncio.Future[SystemInitEvent] | None = None

    def set_session_id(self, session_id: str) -> bool:
        """Record the conversation id; only the first call takes effect."""
        if self.session_id is not None:
            return False
        self.session_id = session_id
        return True


@dataclass
class RunStart:
    """Result of starting a run."""

    streaming_id: str
    stream_url: str
    init_event: SystemInitEvent


def validate_start_request(request: StartConversationRequest) -> None:
    """Check a start request before anything is allocated.

    Raises:
        InvalidRequestError: With a machine-readable code for the first problem
    """
    if not request.working_directory and not request.resumed_session_id:
        raise InvalidRequestError(
            "MISSING_WORKING_DIRECTORY", "workingDirectory is required"
        )
    if not request.initial_prompt:
        raise InvalidRequestError("MISSING_INITIAL_PROMPT", "initialPrompt is required")
    if request.permission_mode and request.permission_mode not in VALID_PERMISSION_MODES:
        raise InvalidRequestError(
            "INVALID_PERMISSION_MODE",
            f"permissionMode must be one of: {', '.join(VALID_PERMISSION_MODES)}",
        )


class ConversationOrchestrator:
    """Starts, supervises and stops agent runs."""

    def __init__(
        self,
        config: OrchestratorConfig,
        engine: AgentEngine,
        permissions: PermissionArbiter,
        status_registry: SessionStatusRegistry,
        broadcaster: EventBroadcaster,
        history: HistoryReader | None = None,
        session_info: SessionInfoBackend | None = None,
        git: GitInspector | None = None,
        notifier: RunNotifier | None = None,
    ):
        """Initialize orchestrator.

        Args:
            config: Orchestrator configuration
            engine: Execution engine runs are launched on
            permissions: Permission arbiter for non-read-only tools
            status_registry: Registry of running conversations
            broadcaster: Event fan-out to stream subscribers
            history: Resolves resumed conversations (resume needs it)
            session_info: Per-conversation bookkeeping store
            git: Captures the repository HEAD of the working directory
            notifier: Receives lifecycle notifications
        """
        self.config = config
        self.engine = engine
        self.permissions = permissions
        self.status_registry = status_registry
        self.broadcaster = broadcaster
        self.history = history
        self.session_info = session_info
        self.git = git
        self.notifier = notifier

        self._runs: dict[str, RunRecord] = {}
        self._logger = get_logger("tether.orchestrator")

    # Run start

    async def start_run(self, request: StartConversationRequest) -> RunStart:
        """Launch a run and wait for the engine to report initialization.

        Args:
            request: Prompt, working directory and overrides

        Returns:
            Run handle, stream location and the init event

        Raises:
            InvalidRequestError: Missing or invalid fields
            ConversationNotFoundError: Resume target has no known working directory
            SystemInitTimeoutError: Engine did not initialize in time (run cleaned up)
            EngineExitedError: Engine ended, failed or was stopped before initializing
        """
        validate_start_request(request)

        resumed_session_id = request.resumed_session_id
        cwd = request.working_directory or await self._resolve_working_directory(
            resumed_session_id or ""
        )

        inherited_messages: list[ConversationMessage] = []
        permission_mode = request.permission_mode
        if resumed_session_id:
            inherited_messages = await self._fetch_previous_messages(resumed_session_id)
            if not permission_mode:
                permission_mode = await self._inherited_permission_mode(resumed_session_id)

        streaming_id = str(uuid.uuid4())
        record = RunRecord(
            streaming_id=streaming_id,
            cwd=cwd,
            initial_prompt=request.initial_prompt or "",
            model=request.model or self.config.default_model,
            permission_mode=permission_mode,
            cancel_token=CancelToken(streaming_id),
            resumed_session_id=resumed_session_id,
            inherited_messages=inherited_messages,
        )
        engine_request = EngineRequest(
            prompt=record.initial_prompt,
            cwd=cwd,
            cancel_token=record.cancel_token,
            can_use_tool=partial(self._authorize_tool, record),
            model=record.model,
            system_prompt=request.system_prompt,
            permission_mode=permission_mode,
            resume=resumed_session_id,
            allowed_tools=list(request.allowed_tools or []),
            disallowed_tools=list(request.disallowed_tools or []),
        )

        async with async_performance_timer(
            "start_run", streaming_id=streaming_id, logger=self._logger
        ) as timer:
            record.init_future = asyncio.get_running_loop().create_future()
            self._runs[streaming_id] = record
            if resumed_session_id:
                self.status_registry.register_pending_resume(
                    streaming_id, resumed_session_id
                )
            record.task = asyncio.create_task(
                self._execute(record, engine_request), name=f"run-{streaming_id}"
            )
            record_run_started(resumed=resumed_session_id is not None)
            update_active_runs(len(self._runs))

            self._logger.info(
                "Run launched",
                streaming_id=streaming_id,
                cwd=cwd,
                model=record.model,
                permission_mode=permission_mode,
                resumed_session_id=resumed_session_id,
            )

            try:
                init_event = await asyncio.wait_for(
                    asyncio.shield(record.init_future), self.config.init_timeout_seconds
                )
            except TimeoutError:
                self._logger.error(
                    "Engine did not initialize in time",
                    streaming_id=streaming_id,
                    timeout_seconds=self.config.init_timeout_seconds,
                )
                await self._terminate(
                    record, "Initialization timed out", outcome="init_timeout", grace=0
                )
                raise SystemInitTimeoutError(
                    streaming_id, self.config.init_timeout_seconds
                ) from None
            except asyncio.CancelledError:
                # Caller's own cancellation propagates; a stopped run does not
                current = asyncio.current_task()
                if not record.init_future.cancelled() or (
                    current is not None and current.cancelling()
                ):
                    raise
                self._logger.warning(
                    "Run stopped before initialization", streaming_id=streaming_id
                )
                raise EngineExitedError(
                    streaming_id, "Run stopped before initialization"
                ) from None
            timer.session_id = init_event.session_id

        await self._record_session_info(record, init_event)
        await self._notify("run_started", streaming_id, init_event.session_id, init_event.cwd)

        return RunStart(
            streaming_id=streaming_id,
            stream_url=self.config.stream_url_template.format(streaming_id=streaming_id),
            init_event=init_event,
        )

    async def _resolve_working_directory(self, session_id: str) -> str:
        if self.history is None:
            raise ConversationNotFoundError(
                session_id, "No history available to resolve the working directory"
            )
        try:
            return await self.history.get_conversation_working_directory(session_id)
        except ConversationNotFoundError:
            raise
        except Exception as e:
            self._logger.warning(
                "Failed to resolve working directory",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ConversationNotFoundError(session_id) from e

    async def _fetch_previous_messages(self, session_id: str) -> list[ConversationMessage]:
        if self.history is None:
            return []
        try:
            return await self.history.fetch_conversation(session_id)
        except Exception as e:
            self._logger.warning(
                "Continuing resume without previous messages",
                session_id=session_id,
                error=str(e),
            )
            return []

    async def _inherited_permission_mode(self, session_id: str) -> str | None:
        if self.session_info is None:
            return None
        try:
            info = await self.session_info.get_session_info(session_id)
        except Exception as e:
            self._logger.warning(
                "Continuing resume without inherited permission mode",
                session_id=session_id,
                error=str(e),
            )
            return None
        return info.permission_mode or None

    async def _record_session_info(self, record: RunRecord, init_event: SystemInitEvent) -> None:
        session_id = init_event.session_id
        updates: dict[str, Any] = {}

        if self.git is not None:
            try:
                head = await self.git.get_current_commit(record.cwd)
            except Exception as e:
                head = None
                self._logger.warning(
                    "Failed to capture repository baseline",
                    streaming_id=record.streaming_id,
                    cwd=record.cwd,
                    error=str(e),
                )
            if head:
                updates["initial_commit_head"] = head
        if record.permission_mode:
            updates["permission_mode"] = record.permission_mode

        if self.session_info is None:
            return

        if updates:
            try:
                await self.session_info.update_session_info(session_id, **updates)
            except Exception as e:
                self._logger.warning(
                    "Failed to store session info", session_id=session_id, error=str(e)
                )
        if record.resumed_session_id:
            try:
                await self.session_info.update_session_info(
                    record.resumed_session_id, continuation_session_id=session_id
                )
            except Exception as e:
                self._logger.warning(
                    "Failed to link continuation",
                    session_id=record.resumed_session_id,
                    continuation_session_id=session_id,
                    error=str(e),
                )

    # Background execution

    async def _execute(self, record: RunRecord, engine_request: EngineRequest) -> None:
        streaming_id = record.streaming_id
        token = record.cancel_token
        outcome = "completed"
        exit_reason = "engine stream ended"

        stream = self.engine.run(engine_request)
        try:
            async for message in stream:
                if token.cancelled:
                    outcome = "cancelled"
                    break

                event = adapt_engine_message(message, record.session_id or "", streaming_id)
                if event is None:
                    continue
                if isinstance(event, SystemInitEvent):
                    self._on_init(record, event)
                self.broadcaster.broadcast(streaming_id, event)

                if isinstance(event, ResultEvent):
                    outcome = "failed" if event.is_error else "completed"
                    break
            else:
                if token.cancelled:
                    outcome = "cancelled"
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            outcome = "cancelled"
        except Exception as e:
            exit_reason = str(e)
            if token.cancelled:
                outcome = "cancelled"
                self._logger.debug(
                    "Engine raised after cancellation", streaming_id=streaming_id, error=str(e)
                )
            else:
                outcome = "failed"
                self._logger.error(
                    "Engine execution failed",
                    streaming_id=streaming_id,
                    session_id=record.session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.broadcaster.broadcast(
                    streaming_id,
                    ErrorEvent(
                        error=str(e),
                        streaming_id=streaming_id,
                        session_id=record.session_id,
                    ),
                )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    self._logger.warning(
                        "Failed to close engine stream", streaming_id=streaming_id, error=str(e)
                    )

            cleaned = self._cleanup(record, outcome)
            if record.init_future is not None and not record.init_future.done():
                record.init_future.set_exception(EngineExitedError(streaming_id, exit_reason))

        if cleaned:
            await self._notify("run_status_changed", streaming_id, record.session_id, outcome)

    def _on_init(self, record: RunRecord, event: SystemInitEvent) -> None:
        if not record.set_session_id(event.session_id):
            self._logger.warning(
                "Ignoring repeated init message",
                streaming_id=record.streaming_id,
                session_id=record.session_id,
                reported_session_id=event.session_id,
            )
            return

        self.status_registry.register_active_session(
            record.streaming_id,
            event.session_id,
            ActiveSessionMetadata(
                initial_prompt=record.initial_prompt,
                working_directory=event.cwd or record.cwd,
                model=event.model,
                inherited_messages=list(record.inherited_messages),
            ),
        )
        if record.init_future is not None and not record.init_future.done():
            record.init_future.set_result(event)

    # Tool permission interception

    async def _authorize_tool(
        self, record: RunRecord, tool_name: str, tool_input: dict[str, Any]
    ) -> ToolPermissionResult:
        streaming_id = record.streaming_id
        if tool_name in self.config.read_only_tools:
            record_permission_outcome(tool_name, "auto_approved")
            return {"behavior": "allow", "updated_input": tool_input}

        if streaming_id not in self._runs:
            record_permission_outcome(tool_name, "abandoned")
            return {"behavior": "deny", "message": CONVERSATION_ENDED_REASON}

        request = self.permissions.add_permission_request(tool_name, tool_input, streaming_id)
        await self._notify("permission_requested", request)

        try:
            decision = await self.permissions.wait_for_decision(
                request.id, self.config.permission_timeout_seconds
            )
        except (PermissionAbandonedError, PermissionNotFoundError):
            record_permission_outcome(tool_name, "abandoned")
            return {"behavior": "deny", "message": CONVERSATION_ENDED_REASON}

        resolved = decision.request
        if decision.approved:
            record_permission_outcome(tool_name, "approved", decision.waited_seconds)
            updated_input = (
                resolved.modified_input if resolved.modified_input is not None else tool_input
            )
            return {"behavior": "allow", "updated_input": updated_input}

        if decision.timed_out:
            record_permission_outcome(tool_name, "timed_out", decision.waited_seconds)
            return {"behavior": "deny", "message": PERMISSION_TIMEOUT_REASON}

        record_permission_outcome(tool_name, "denied", decision.waited_seconds)
        return {"behavior": "deny", "message": resolved.deny_reason or PERMISSION_DENIED_REASON}

    # Stop and cleanup

    async def stop_run(self, streaming_id: str) -> bool:
        """Stop a run.

        Cleanup (registry, permission waiters, subscriber ``closed`` event)
        happens before this returns; the execution task is signalled and
        cancelled if it has not wound down after the grace period.

        Returns:
            True if the run was active, False if it is unknown or already gone
        """
        record = self._runs.get(streaming_id)
        if record is None:
            return False

        self._logger.info(
            "Stopping run", streaming_id=streaming_id, session_id=record.session_id
        )
        await self._terminate(record, "Stopped by user", outcome="cancelled")
        return True

    async def _terminate(
        self,
        record: RunRecord,
        reason: str,
        outcome: str,
        grace: float | None = None,
    ) -> None:
        record.cancel_token.cancel(reason)
        if record.init_future is not None and not record.init_future.done():
            record.init_future.cancel()

        cleaned = self._cleanup(record, outcome)

        task = record.task
        if task is not None and not task.done():
            grace = self.config.stop_grace_seconds if grace is None else grace
            if grace <= 0:
                task.cancel()
            else:
                handle = asyncio.get_running_loop().call_later(grace, task.cancel)
                task.add_done_callback(lambda _: handle.cancel())

        if cleaned:
            await self._notify("run_status_changed", record.streaming_id, record.session_id, outcome)

    def _cleanup(self, record: RunRecord, outcome: str) -> bool:
        """Release everything a run holds; True only for the first call."""
        streaming_id = record.streaming_id
        if self._runs.pop(streaming_id, None) is None:
            return False

        self.status_registry.unregister_active_session(streaming_id)
        self.permissions.abandon_run(streaming_id)
        self.broadcaster.close_session(streaming_id)

        record_run_finished(outcome)
        update_active_runs(len(self._runs))
        self._logger.info(
            "Run finished",
            streaming_id=streaming_id,
            session_id=record.session_id,
            outcome=outcome,
            duration_seconds=round(time.time() - record.started_at, 3),
        )
        return True

    async def _notify(self, method: str, *args: Any) -> None:
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, method)(*args)
        except Exception as e:
            self._logger.warning(
                "Notifier failed", method=method, error=str(e), error_type=type(e).__name__
            )

    # Queries

    def is_run_active(self, streaming_id: str) -> bool:
        return streaming_id in self._runs

    def get_run(self, streaming_id: str) -> RunRecord | None:
        return self._runs.get(streaming_id)

    def get_active_runs(self) -> list[str]:
        return list(self._runs)

    @property
    def active_run_count(self) -> int:
        return len(self._runs)

    async def shutdown(self) -> None:
        """Stop every run and wait for the execution tasks to exit."""
        records = list(self._runs.values())
        self._logger.info("Shutting down orchestrator", active_runs=len(records))

        for record in records:
            await self._terminate(record, "Server shutting down", outcome="cancelled", grace=0)

        tasks = [r.task for r in records if r.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
