"""Composition root wiring every service in dependency order.

Components are constructed once by ``ServiceContainer.initialize`` and handed
to each other by reference. Until initialization completes the container is
in the NOT_READY state and refuses access to its services.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from tether.adapters.engine.base import AgentEngine
from tether.adapters.engine.claude import ClaudeAgentEngine
from tether.adapters.engine.scripted import ScriptedEngine, assistant_text
from tether.adapters.history.base import HistoryReader
from tether.adapters.history.jsonl import JsonlHistoryReader
from tether.adapters.notifications import LoggingNotifier, RunNotifier
from tether.config import Config, EngineConfig
from tether.core.broadcaster import EventBroadcaster
from tether.core.orchestrator import ConversationOrchestrator
from tether.core.permissions import PermissionArbiter
from tether.core.status import SessionStatusRegistry
from tether.storage.session_info import (
    InMemorySessionInfoStore,
    SessionInfoBackend,
    SessionInfoStore,
)
from tether.utils.errors import ServicesNotReadyError
from tether.utils.git import GitInspector
from tether.utils.telemetry import get_logger


class ServiceState(Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    SHUT_DOWN = "shut_down"


@dataclass
class Services:
    """The wired service graph."""

    config: Config
    engine: AgentEngine
    permissions: PermissionArbiter
    status_registry: SessionStatusRegistry
    broadcaster: EventBroadcaster
    history: HistoryReader
    session_info: SessionInfoBackend
    notifier: RunNotifier
    orchestrator: ConversationOrchestrator


def build_engine(engine_config: EngineConfig, default_model: str | None = None) -> AgentEngine:
    """Create the configured execution engine."""
    if engine_config.kind == "scripted":
        return ScriptedEngine(script=[assistant_text("Hello from the scripted engine.")])

    return ClaudeAgentEngine(default_model=default_model, cli_path=engine_config.cli_path)


class ServiceContainer:
    """Builds, exposes and tears down the service graph.

    Collaborators may be injected to replace the configured defaults, which
    is how tests swap in scripted engines and in-memory stores.
    """

    def __init__(
        self,
        config: Config | None = None,
        engine: AgentEngine | None = None,
        history: HistoryReader | None = None,
        session_info: SessionInfoBackend | None = None,
        notifier: RunNotifier | None = None,
        git: GitInspector | None = None,
    ):
        self.config = config or Config()
        self._engine = engine
        self._history = history
        self._session_info = session_info
        self._notifier = notifier
        self._git = git

        self._state = ServiceState.NOT_READY
        self._services: Services | None = None
        self._lock = asyncio.Lock()
        self._logger = get_logger("tether.services")

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is ServiceState.READY

    @property
    def services(self) -> Services:
        """The service graph.

        Raises:
            ServicesNotReadyError: Before initialization or after shutdown
        """
        if self._state is not ServiceState.READY or self._services is None:
            raise ServicesNotReadyError(self._state.value)
        return self._services

    def _build_session_info(self) -> SessionInfoBackend:
        if self._session_info is not None:
            return self._session_info
        storage = self.config.storage
        if storage.in_memory:
            return InMemorySessionInfoStore()
        return SessionInfoStore(Path(storage.session_info_path).expanduser())

    async def initialize(self) -> Services:
        """Construct every component once; later calls return the same graph."""
        async with self._lock:
            if self._state is ServiceState.READY and self._services is not None:
                return self._services
            if self._state is ServiceState.SHUT_DOWN:
                raise ServicesNotReadyError(self._state.value)

            config = self.config
            session_info = self._build_session_info()
            await session_info.initialize()

            engine = self._engine or build_engine(
                config.engine, config.orchestrator.default_model
            )
            history = self._history or JsonlHistoryReader(config.history.projects_dir)
            notifier = self._notifier or LoggingNotifier()

            permissions = PermissionArbiter()
            status_registry = SessionStatusRegistry()
            broadcaster = EventBroadcaster(
                heartbeat_interval=config.broadcaster.heartbeat_interval_seconds,
                max_pending_frames=config.broadcaster.max_pending_frames,
            )
            orchestrator = ConversationOrchestrator(
                config=config.orchestrator,
                engine=engine,
                permissions=permissions,
                status_registry=status_registry,
                broadcaster=broadcaster,
                history=history,
                session_info=session_info,
                git=self._git or GitInspector(),
                notifier=notifier,
            )

            self._services = Services(
                config=config,
                engine=engine,
                permissions=permissions,
                status_registry=status_registry,
                broadcaster=broadcaster,
                history=history,
                session_info=session_info,
                notifier=notifier,
                orchestrator=orchestrator,
            )
            self._state = ServiceState.READY
            self._logger.info(
                "Services initialized",
                engine=type(engine).__name__,
                history=type(history).__name__,
                session_info=type(session_info).__name__,
            )
            return self._services

    async def shutdown(self) -> None:
        """Stop every run, disconnect subscribers and close storage."""
        async with self._lock:
            services = self._services
            self._state = ServiceState.SHUT_DOWN
            self._services = None
            if services is None:
                return

            await services.orchestrator.shutdown()
            await services.broadcaster.shutdown()
            await services.session_info.close()
            self._logger.info("Services shut down")
