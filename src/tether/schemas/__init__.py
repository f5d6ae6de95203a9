"""Data models and type definitions for tether."""

from .events import (
    AssistantEvent,
    ClosedEvent,
    ConnectedEvent,
    ErrorEvent,
    ResultEvent,
    StreamEvent,
    SystemInitEvent,
    UserEvent,
    encode_sse,
    parse_event,
)
from .messages import (
    ConversationDetails,
    ConversationMessage,
    ConversationSummary,
    PermissionRequest,
    SessionInfo,
    StartConversationRequest,
)
from .types import CancelToken, EngineMessage, EngineRequest, ToolPermissionResult

__all__ = [
    "AssistantEvent",
    "CancelToken",
    "ClosedEvent",
    "ConnectedEvent",
    "ConversationDetails",
    "ConversationMessage",
    "ConversationSummary",
    "EngineMessage",
    "EngineRequest",
    "ErrorEvent",
    "PermissionRequest",
    "ResultEvent",
    "SessionInfo",
    "StartConversationRequest",
    "StreamEvent",
    "SystemInitEvent",
    "ToolPermissionResult",
    "UserEvent",
    "encode_sse",
    "parse_event",
]
