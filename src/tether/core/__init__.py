# Conversation orchestration core

from .broadcaster import EventBroadcaster, QueueSink, StreamSink, Subscription
from .orchestrator import (
    ConversationOrchestrator,
    OrchestratorConfig,
    RunRecord,
    RunStart,
)
from .permissions import PermissionArbiter, PermissionDecision
from .status import ActiveSessionMetadata, SessionStatusRegistry

__all__ = [
    "ActiveSessionMetadata",
    "ConversationOrchestrator",
    "EventBroadcaster",
    "OrchestratorConfig",
    "PermissionArbiter",
    "PermissionDecision",
    "QueueSink",
    "RunRecord",
    "RunStart",
    "SessionStatusRegistry",
    "StreamSink",
    "Subscription",
]
