"""In-memory history reader for tests and demos."""

from tether.adapters.history.base import ConversationMetadata
from tether.schemas.messages import ConversationListResponse, ConversationMessage
from tether.utils.errors import ConversationNotFoundError


class InMemoryHistoryReader:
    """History reader over conversations registered with ``add_conversation``."""

    def __init__(self) -> None:
        self._metadata: dict[str, ConversationMetadata] = {}
        self._messages: dict[str, list[ConversationMessage]] = {}

    def add_conversation(
        self,
        session_id: str,
        project_path: str,
        messages: list[ConversationMessage] | None = None,
        summary: str = "",
        model: str = "unknown",
    ) -> None:
        messages = list(messages or [])
        self._messages[session_id] = messages
        self._metadata[session_id] = ConversationMetadata(
            session_id=session_id,
            project_path=project_path,
            summary=summary,
            model=model,
            message_count=len(messages),
            created_at=messages[0].timestamp if messages else "",
            updated_at=messages[-1].timestamp if messages else "",
        )

    async def get_conversation_working_directory(self, session_id: str) -> str:
        metadata = self._metadata.get(session_id)
        if metadata is None or not metadata.project_path:
            raise ConversationNotFoundError(session_id)
        return metadata.project_path

    async def fetch_conversation(self, session_id: str) -> list[ConversationMessage]:
        if session_id not in self._messages:
            raise ConversationNotFoundError(session_id)
        return [message.model_copy() for message in self._messages[session_id]]

    async def get_conversation_metadata(
        self, session_id: str
    ) -> ConversationMetadata | None:
        return self._metadata.get(session_id)

    async def list_conversations(
        self,
        limit: int | None = None,
        offset: int = 0,
        project_path: str | None = None,
    ) -> ConversationListResponse:
        matching = [
            metadata
            for metadata in self._metadata.values()
            if project_path is None or metadata.project_path == project_path
        ]
        page = matching[offset : offset + limit if limit is not None else None]
        return ConversationListResponse(
            conversations=[metadata.to_summary() for metadata in page],
            total=len(matching),
        )

