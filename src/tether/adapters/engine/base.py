"""Execution engine contract."""

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from tether.schemas.types import EngineMessage, EngineRequest


@runtime_checkable
class AgentEngine(Protocol):
    """Protocol for agent execution engines.

    An engine runs one conversation turn sequence per ``run`` call and yields
    engine-native messages in production order, starting with a system init
    message once it is ready. Before running any tool it awaits
    ``request.can_use_tool`` and honors the returned decision.
    """

    def run(self, request: EngineRequest) -> AsyncIterator[EngineMessage]:
        """Start a run and stream its messages.

        Args:
            request: Prompt, working directory, overrides, permission callback
                and cancel token for the run

        Yields:
            Engine-native message dicts

        Raises:
            Exception: Any engine failure; the orchestrator reports it as an
                error event
        """
        ...
