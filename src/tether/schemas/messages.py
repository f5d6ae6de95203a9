"""Pydantic models for the HTTP API and in-memory bookkeeping records.

API models serialize with camelCase aliases (``streamingId``, ``toolName``)
and accept either spelling on input.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tether.schemas.events import utc_timestamp

PermissionStatus = Literal["pending", "approved", "denied"]
ConversationStatus = Literal["ongoing", "completed", "pending"]


class ApiModel(BaseModel):
    """Base for models exchanged with clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PermissionRequest(ApiModel):
    """Authorization request gating one tool invocation."""

    id: str = Field(..., description="Unique request identifier")
    streaming_id: str | None = Field(
        default=None, description="Run handle the tool call belongs to"
    )
    tool_name: str = Field(..., description="Tool the engine wants to run")
    tool_input: dict[str, Any] = Field(
        default_factory=dict, description="Input the engine proposed"
    )
    timestamp: str = Field(default_factory=utc_timestamp)
    status: PermissionStatus = "pending"
    modified_input: dict[str, Any] | None = Field(
        default=None, description="Replacement input supplied with an approval"
    )
    deny_reason: str | None = Field(
        default=None, description="Reason supplied with a denial"
    )


class StartConversationRequest(ApiModel):
    """Body of ``POST /api/conversations/start``.

    Required fields are checked by the orchestrator so that failures carry
    machine-readable codes instead of generic schema errors.
    """

    working_directory: str | None = None
    initial_prompt: str | None = None
    resumed_session_id: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None
    permission_mode: str | None = None


class StartConversationResponse(ApiModel):
    streaming_id: str
    stream_url: str
    session_id: str
    cwd: str
    tools: list[str]
    mcp_servers: list[Any]
    model: str
    permission_mode: str
    api_key_source: str


class StopConversationResponse(ApiModel):
    success: bool


class PermissionDecisionRequest(ApiModel):
    action: str | None = None
    modified_input: dict[str, Any] | None = None
    deny_reason: str | None = None


class PermissionDecisionResponse(ApiModel):
    success: bool
    message: str


class PermissionListResponse(ApiModel):
    permissions: list[PermissionRequest]


class PermissionNotifyRequest(ApiModel):
    """Permission request filed by an out-of-process tool gate."""

    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
    streaming_id: str | None = None


class PermissionNotifyResponse(ApiModel):
    success: bool
    id: str


class ConversationMessage(ApiModel):
    """One persisted (or inherited) turn of a conversation."""

    uuid: str
    type: str
    message: Any = None
    timestamp: str = Field(default_factory=utc_timestamp)
    session_id: str
    parent_uuid: str | None = None
    cwd: str | None = None


class ConversationSummary(ApiModel):
    """Entry of the conversation list view."""

    session_id: str
    project_path: str = ""
    summary: str = ""
    created_at: str = Field(default_factory=utc_timestamp)
    updated_at: str = Field(default_factory=utc_timestamp)
    message_count: int = 0
    total_duration: float = 0
    model: str = "unknown"
    status: ConversationStatus = "completed"
    streaming_id: str | None = None


class ConversationListResponse(ApiModel):
    conversations: list[ConversationSummary]
    total: int


class ConversationDetailsMetadata(ApiModel):
    total_duration: float = 0
    model: str = "unknown"


class ConversationDetails(ApiModel):
    """Full conversation view returned by ``GET /api/conversations/{id}``."""

    messages: list[ConversationMessage]
    summary: str = ""
    project_path: str = ""
    metadata: ConversationDetailsMetadata = Field(
        default_factory=ConversationDetailsMetadata
    )


class SessionInfo(BaseModel):
    """Per-conversation bookkeeping kept outside the engine's history."""

    session_id: str
    permission_mode: str = "default"
    continuation_session_id: str = ""
    initial_commit_head: str = ""
    created_at: str = Field(default_factory=utc_timestamp)
    updated_at: str = Field(default_factory=utc_timestamp)


class SystemStatusResponse(ApiModel):
    status: str = "ok"
    version: str
    active_conversations: int
    active_subscribers: int
