"""Registry of conversations that are currently executing.

Answers "is conversation X running, and under which run handle?" without
touching persistent history, and synthesizes list/detail views for runs whose
history has not been written yet.
"""

from dataclasses import dataclass, field

from tether.schemas.events import utc_timestamp
from tether.schemas.messages import (
    ConversationDetails,
    ConversationDetailsMetadata,
    ConversationMessage,
    ConversationStatus,
    ConversationSummary,
)
from tether.utils.telemetry import get_logger


@dataclass
class ActiveSessionMetadata:
    """What the registry remembers about a run for status queries."""

    initial_prompt: str
    working_directory: str
    model: str
    inherited_messages: list[ConversationMessage] = field(default_factory=list)
    started_at: str = field(default_factory=utc_timestamp)


@dataclass
class _ActiveSession:
    streaming_id: str
    session_id: str
    metadata: ActiveSessionMetadata


class SessionStatusRegistry:
    """Maps run handles to conversation ids for the lifetime of each run."""

    def __init__(self) -> None:
        self._by_streaming_id: dict[str, _ActiveSession] = {}
        self._streaming_by_session: dict[str, str] = {}
        # Resume targets of runs launched but not yet initialized
        self._pending_resumes: dict[str, str] = {}
        self.logger = get_logger("tether.status")

    def register_pending_resume(self, streaming_id: str, session_id: str) -> None:
        """Mark a conversation as about to be resumed by a starting run."""
        self._pending_resumes[streaming_id] = session_id

    def register_active_session(
        self,
        streaming_id: str,
        session_id: str,
        metadata: ActiveSessionMetadata,
    ) -> None:
        """Record that a run is executing a conversation.

        Args:
            streaming_id: Run handle
            session_id: Conversation id reported by the engine
            metadata: Prompt, directory, model and inherited turns of the run
        """
        self._pending_resumes.pop(streaming_id, None)

        previous = self._by_streaming_id.get(streaming_id)
        if previous is not None and previous.session_id != session_id:
            self._streaming_by_session.pop(previous.session_id, None)

        self._by_streaming_id[streaming_id] = _ActiveSession(
            streaming_id=streaming_id, session_id=session_id, metadata=metadata
        )
        self._streaming_by_session[session_id] = streaming_id

        self.logger.info(
            "Registered active session",
            streaming_id=streaming_id,
            session_id=session_id,
            active_count=len(self._by_streaming_id),
        )

    def unregister_active_session(self, streaming_id: str) -> str | None:
        """Forget a run.

        Returns:
            The conversation id the run was executing, if it had initialized
        """
        self._pending_resumes.pop(streaming_id, None)
        active = self._by_streaming_id.pop(streaming_id, None)
        if active is None:
            return None

        if self._streaming_by_session.get(active.session_id) == streaming_id:
            del self._streaming_by_session[active.session_id]

        self.logger.info(
            "Unregistered active session",
            streaming_id=streaming_id,
            session_id=active.session_id,
            active_count=len(self._by_streaming_id),
        )
        return active.session_id

    def get_conversation_status(self, session_id: str) -> ConversationStatus:
        if session_id in self._streaming_by_session:
            return "ongoing"
        if session_id in self._pending_resumes.values():
            return "pending"
        return "completed"

    def get_streaming_id(self, session_id: str) -> str | None:
        return self._streaming_by_session.get(session_id)

    def is_active(self, streaming_id: str) -> bool:
        return streaming_id in self._by_streaming_id

    def get_active_conversation_details(
        self, session_id: str
    ) -> ConversationDetails | None:
        """Build a detail view for a running conversation from memory.

        Inherited turns from a resumed conversation come first, followed by
        the run's initial prompt as a user turn.
        """
        streaming_id = self._streaming_by_session.get(session_id)
        if streaming_id is None:
            return None
        active = self._by_streaming_id[streaming_id]
        metadata = active.metadata

        messages = list(metadata.inherited_messages)
        messages.append(
            ConversationMessage(
                uuid=f"active-{streaming_id}-user",
                type="user",
                message={"role": "user", "content": metadata.initial_prompt},
                timestamp=metadata.started_at,
                session_id=session_id,
                cwd=metadata.working_directory,
            )
        )

        return ConversationDetails(
            messages=messages,
            summary="",
            project_path=metadata.working_directory,
            metadata=ConversationDetailsMetadata(total_duration=0, model=metadata.model),
        )

    def get_conversations_not_in_history(
        self, known_session_ids: set[str]
    ) -> list[ConversationSummary]:
        """Summaries of running conversations missing from a history listing."""
        summaries = []
        for active in self._by_streaming_id.values():
            if active.session_id in known_session_ids:
                continue
            metadata = active.metadata
            summaries.append(
                ConversationSummary(
                    session_id=active.session_id,
                    project_path=metadata.working_directory,
                    summary=metadata.initial_prompt[:100],
                    created_at=metadata.started_at,
                    updated_at=metadata.started_at,
                    message_count=len(metadata.inherited_messages) + 1,
                    model=metadata.model,
                    status="ongoing",
                    streaming_id=active.streaming_id,
                )
            )
        return summaries

    @property
    def active_count(self) -> int:
        return len(self._by_streaming_id)
