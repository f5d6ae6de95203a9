"""tether - Supervised agent conversation service.

tether launches agent runs on an execution engine, gates their tool use
behind human permission decisions, and fans each run's events out to live
stream subscribers.
"""

__version__ = "0.1.0"

# Core exports
from .config import Config, load_config
from .core import (
    ConversationOrchestrator,
    EventBroadcaster,
    OrchestratorConfig,
    PermissionArbiter,
    SessionStatusRegistry,
)
from .core.services import ServiceContainer, Services

__all__ = [
    "Config",
    "ConversationOrchestrator",
    "EventBroadcaster",
    "OrchestratorConfig",
    "PermissionArbiter",
    "ServiceContainer",
    "Services",
    "SessionStatusRegistry",
    "__version__",
    "load_config",
]
