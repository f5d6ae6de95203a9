"""History collaborator contract."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from tether.schemas.messages import (
    ConversationListResponse,
    ConversationMessage,
    ConversationSummary,
)


@dataclass
class ConversationMetadata:
    """Summary facts about a persisted conversation."""

    session_id: str
    project_path: str
    summary: str = ""
    model: str = "unknown"
    total_duration: float = 0
    message_count: int = 0
    created_at: str = ""
    updated_at: str = ""

    def to_summary(self) -> ConversationSummary:
        summary = ConversationSummary(
            session_id=self.session_id,
            project_path=self.project_path,
            summary=self.summary,
            message_count=self.message_count,
            total_duration=self.total_duration,
            model=self.model,
        )
        if self.created_at:
            summary.created_at = self.created_at
        if self.updated_at:
            summary.updated_at = self.updated_at
        return summary


@runtime_checkable
class HistoryReader(Protocol):
    """Read access to persisted conversation history.

    Lookups of unknown conversations raise ``ConversationNotFoundError``,
    except ``get_conversation_metadata`` which returns None.
    """

    async def get_conversation_working_directory(self, session_id: str) -> str: ...

    async def fetch_conversation(self, session_id: str) -> list[ConversationMessage]: ...

    async def get_conversation_metadata(
        self, session_id: str
    ) -> ConversationMetadata | None: ...

    async def list_conversations(
        self,
        limit: int | None = None,
        offset: int = 0,
        project_path: str | None = None,
    ) -> ConversationListResponse: ...
