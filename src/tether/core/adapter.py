"""Mapping from engine-native messages to canonical stream events.

Each engine message kind has one entry in ``_HANDLERS``. Kinds listed in
``_DROPPED_KINDS`` are expected and produce no event; anything else without a
handler is dropped and logged so new engine kinds surface in the logs.

Fields the engine omits are filled with wire-compatible defaults. Every such
substitution is logged and counted, since a missing field usually points at a
change in the engine's message contract.
"""

from collections.abc import Callable
from typing import Any

from tether.schemas.events import (
    AssistantEvent,
    ResultEvent,
    ServerToolUse,
    StreamEvent,
    SystemInitEvent,
    Usage,
    UserEvent,
)
from tether.schemas.types import EngineMessage
from tether.utils.telemetry import (
    get_logger,
    record_default_substitution,
    record_dropped_message,
)

logger = get_logger("tether.adapter")

_DROPPED_KINDS = frozenset({"stream_event", "tool_progress", "auth_status"})

_USAGE_COUNTERS = (
    "input_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
    "output_tokens",
)


def _substitute(event_type: str, field: str) -> None:
    logger.debug("Substituting default for missing field", event_type=event_type, field=field)
    record_default_substitution(event_type, field)


def _value(
    message: dict[str, Any], key: str, default: Any, event_type: str
) -> Any:
    value = message.get(key)
    if value is None:
        _substitute(event_type, key)
        return default
    return value


def _session_id(message: EngineMessage, session_id: str, event_type: str) -> str:
    value = message.get("session_id")
    if not value:
        _substitute(event_type, "session_id")
        return session_id
    return value


def _adapt_system(message: EngineMessage, session_id: str) -> StreamEvent | None:
    subtype = message.get("subtype")
    if subtype != "init":
        logger.debug("Dropping system message", subtype=subtype)
        record_dropped_message(f"system:{subtype}")
        return None

    return SystemInitEvent(
        session_id=_session_id(message, session_id, "system"),
        cwd=_value(message, "cwd", "", "system"),
        tools=_value(message, "tools", [], "system"),
        mcp_servers=_value(message, "mcp_servers", [], "system"),
        model=_value(message, "model", "unknown", "system"),
        permission_mode=_value(message, "permissionMode", "default", "system"),
        api_key_source=_value(message, "apiKeySource", "unknown", "system"),
    )


def _adapt_usage(raw: dict[str, Any] | None) -> Usage:
    if raw is None:
        _substitute("result", "usage")
        return Usage()

    counters = {key: _value(raw, key, 0, "result") for key in _USAGE_COUNTERS}
    server_tool_use = raw.get("server_tool_use") or {}
    return Usage(
        **counters,
        server_tool_use=ServerToolUse(
            web_search_requests=server_tool_use.get("web_search_requests") or 0
        ),
    )


def _adapt_result(message: EngineMessage, session_id: str) -> StreamEvent:
    return ResultEvent(
        subtype=_value(message, "subtype", "success", "result"),
        session_id=_session_id(message, session_id, "result"),
        is_error=bool(message.get("is_error", False)),
        duration_ms=_value(message, "duration_ms", 0, "result"),
        duration_api_ms=_value(message, "duration_api_ms", 0, "result"),
        num_turns=_value(message, "num_turns", 0, "result"),
        result=message.get("result"),
        usage=_adapt_usage(message.get("usage")),
    )


def _adapt_assistant(message: EngineMessage, session_id: str) -> StreamEvent:
    return AssistantEvent(
        session_id=_session_id(message, session_id, "assistant"),
        message=message.get("message"),
        parent_tool_use_id=message.get("parent_tool_use_id") or None,
    )


def _adapt_user(message: EngineMessage, session_id: str) -> StreamEvent:
    return UserEvent(
        session_id=_session_id(message, session_id, "user"),
        message=message.get("message"),
        parent_tool_use_id=message.get("parent_tool_use_id") or None,
    )


_HANDLERS: dict[str, Callable[[EngineMessage, str], StreamEvent | None]] = {
    "system": _adapt_system,
    "result": _adapt_result,
    "assistant": _adapt_assistant,
    "user": _adapt_user,
}


def adapt_engine_message(
    message: EngineMessage,
    session_id: str = "",
    streaming_id: str | None = None,
) -> StreamEvent | None:
    """Translate one engine message into a canonical event.

    Args:
        message: Engine-native message
        session_id: Conversation id known so far, used when the message lacks one
        streaming_id: Run handle, for log context only

    Returns:
        The canonical event, or None when the kind has no canonical form
    """
    kind = message.get("type")
    handler = _HANDLERS.get(kind) if isinstance(kind, str) else None
    if handler is not None:
        return handler(message, session_id)

    if kind in _DROPPED_KINDS:
        logger.debug("Dropping engine message", message_type=kind, streaming_id=streaming_id)
    else:
        logger.info("Dropping unknown engine message", message_type=kind, streaming_id=streaming_id)
    record_dropped_message(str(kind))
    return None
