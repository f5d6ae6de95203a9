"""Canonical stream events and their SSE framing.

Every event a subscriber can observe on ``/api/stream/{streaming_id}`` is one
of the variants below, discriminated by ``type``. Field names follow the wire
format clients already consume (snake_case, with a few camelCase aliases).
"""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

HEARTBEAT_FRAME = b": heartbeat\n\n"


def utc_timestamp() -> str:
    """Current time as an ISO-8601 string with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _EventModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ConnectedEvent(_EventModel):
    """Connection acknowledgement sent to a subscriber as soon as it attaches."""

    type: Literal["connected"] = "connected"
    streaming_id: str
    timestamp: str = Field(default_factory=utc_timestamp)


class SystemInitEvent(_EventModel):
    """Engine reported it is ready; carries the durable conversation id."""

    type: Literal["system"] = "system"
    subtype: Literal["init"] = "init"
    session_id: str
    cwd: str = ""
    tools: list[str] = Field(default_factory=list)
    mcp_servers: list[Any] = Field(default_factory=list)
    model: str = "unknown"
    permission_mode: str = Field(default="default", alias="permissionMode")
    api_key_source: str = Field(default="unknown", alias="apiKeySource")


class ServerToolUse(_EventModel):
    web_search_requests: int = 0


class Usage(_EventModel):
    """Token counters for a finished run, zero when the engine omits them."""

    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0
    server_tool_use: ServerToolUse = Field(default_factory=ServerToolUse)


class ResultEvent(_EventModel):
    """Terminal result of a run."""

    type: Literal["result"] = "result"
    subtype: str = "success"
    session_id: str
    is_error: bool = False
    duration_ms: float = 0
    duration_api_ms: float = 0
    num_turns: int = 0
    result: str | None = None
    usage: Usage = Field(default_factory=Usage)


class AssistantEvent(_EventModel):
    type: Literal["assistant"] = "assistant"
    session_id: str
    message: Any = None
    parent_tool_use_id: str | None = None


class UserEvent(_EventModel):
    type: Literal["user"] = "user"
    session_id: str
    message: Any = None
    parent_tool_use_id: str | None = None


class ErrorEvent(_EventModel):
    """Engine or transport failure; always followed by a closed event."""

    type: Literal["error"] = "error"
    error: str
    streaming_id: str
    session_id: str | None = None
    timestamp: str = Field(default_factory=utc_timestamp)


class ClosedEvent(_EventModel):
    """Final event of a stream; the server closes the connection after it."""

    type: Literal["closed"] = "closed"
    streaming_id: str = Field(alias="streamingId")
    timestamp: str = Field(default_factory=utc_timestamp)


StreamEvent = Annotated[
    ConnectedEvent
    | SystemInitEvent
    | AssistantEvent
    | UserEvent
    | ResultEvent
    | ErrorEvent
    | ClosedEvent,
    Field(discriminator="type"),
]

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def encode_event(event: BaseModel) -> str:
    """Serialize an event to its wire JSON (aliases applied, unset optionals dropped)."""
    return event.model_dump_json(by_alias=True, exclude_none=True)


def encode_sse(event: BaseModel) -> bytes:
    """Frame an event as one SSE ``data:`` record."""
    return f"data: {encode_event(event)}\n\n".encode()


def parse_event(data: str | bytes) -> Any:
    """Parse wire JSON back into the matching event model."""
    return stream_event_adapter.validate_json(data)
