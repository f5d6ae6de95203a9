"""History reader over Claude's per-project JSONL transcripts.

Claude writes one ``<session_id>.jsonl`` file per conversation under
``~/.claude/projects/<encoded project path>/``. Each line is one entry:
``user`` and ``assistant`` turns, plus bookkeeping entries such as
``summary``. File access runs in a worker thread.
"""

import asyncio
from pathlib import Path
from typing import Any

import orjson

from tether.adapters.history.base import ConversationMetadata
from tether.schemas.messages import ConversationListResponse, ConversationMessage
from tether.utils.errors import ConversationNotFoundError
from tether.utils.telemetry import get_logger

DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"

_TURN_TYPES = ("user", "assistant")


def _first_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                return str(block.get("text", ""))
    return ""


class JsonlHistoryReader:
    """Reads conversations from a Claude projects directory."""

    def __init__(self, projects_dir: str | Path | None = None):
        """Initialize reader.

        Args:
            projects_dir: Root of the per-project transcript directories
        """
        self.projects_dir = Path(projects_dir) if projects_dir else DEFAULT_PROJECTS_DIR
        self._logger = get_logger("tether.adapters.history.jsonl")

    def _find_transcript(self, session_id: str) -> Path | None:
        if not self.projects_dir.is_dir() or "/" in session_id:
            return None
        return next(self.projects_dir.glob(f"*/{session_id}.jsonl"), None)

    def _read_entries(self, path: Path) -> list[dict[str, Any]]:
        entries = []
        with path.open("rb") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = orjson.loads(line)
                except orjson.JSONDecodeError:
                    self._logger.warning(
                        "Skipping malformed transcript line",
                        path=str(path),
                        line_number=line_number,
                    )
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
        return entries

    def _load(self, session_id: str) -> list[dict[str, Any]]:
        path = self._find_transcript(session_id)
        if path is None:
            raise ConversationNotFoundError(session_id)
        return self._read_entries(path)

    def _messages(
        self, session_id: str, entries: list[dict[str, Any]]
    ) -> list[ConversationMessage]:
        messages = []
        for entry in entries:
            if entry.get("type") not in _TURN_TYPES or "uuid" not in entry:
                continue
            message = ConversationMessage(
                uuid=entry["uuid"],
                type=entry["type"],
                message=entry.get("message"),
                session_id=entry.get("sessionId") or session_id,
                parent_uuid=entry.get("parentUuid"),
                cwd=entry.get("cwd"),
            )
            if entry.get("timestamp"):
                message.timestamp = entry["timestamp"]
            messages.append(message)
        return messages

    def _metadata(
        self, session_id: str, entries: list[dict[str, Any]]
    ) -> ConversationMetadata:
        messages = self._messages(session_id, entries)
        project_path = next((e["cwd"] for e in entries if e.get("cwd")), "")
        summary = next(
            (e["summary"] for e in entries if e.get("type") == "summary" and e.get("summary")),
            "",
        )
        if not summary:
            first_user = next((m for m in messages if m.type == "user"), None)
            summary = _first_text(first_user.message)[:100] if first_user else ""
        model = next(
            (
                m.message["model"]
                for m in messages
                if m.type == "assistant" and isinstance(m.message, dict) and m.message.get("model")
            ),
            "unknown",
        )
        return ConversationMetadata(
            session_id=session_id,
            project_path=project_path,
            summary=summary,
            model=model,
            message_count=len(messages),
            created_at=messages[0].timestamp if messages else "",
            updated_at=messages[-1].timestamp if messages else "",
        )

    async def get_conversation_working_directory(self, session_id: str) -> str:
        entries = await asyncio.to_thread(self._load, session_id)
        cwd = next((e["cwd"] for e in entries if e.get("cwd")), None)
        if not cwd:
            raise ConversationNotFoundError(
                session_id, f"No working directory recorded for {session_id}"
            )
        return cwd

    async def fetch_conversation(self, session_id: str) -> list[ConversationMessage]:
        entries = await asyncio.to_thread(self._load, session_id)
        return self._messages(session_id, entries)

    async def get_conversation_metadata(
        self, session_id: str
    ) -> ConversationMetadata | None:
        try:
            entries = await asyncio.to_thread(self._load, session_id)
        except ConversationNotFoundError:
            return None
        return self._metadata(session_id, entries)

    def _list_sync(
        self, limit: int | None, offset: int, project_path: str | None
    ) -> tuple[list[ConversationMetadata], int]:
        if not self.projects_dir.is_dir():
            return [], 0
        transcripts = sorted(
            self.projects_dir.glob("*/*.jsonl"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        matching = []
        for path in transcripts:
            metadata = self._metadata(path.stem, self._read_entries(path))
            if project_path is None or metadata.project_path == project_path:
                matching.append(metadata)
        page = matching[offset : offset + limit if limit is not None else None]
        return page, len(matching)

    async def list_conversations(
        self,
        limit: int | None = None,
        offset: int = 0,
        project_path: str | None = None,
    ) -> ConversationListResponse:
        page, total = await asyncio.to_thread(self._list_sync, limit, offset, project_path)
        return ConversationListResponse(
            conversations=[metadata.to_summary() for metadata in page],
            total=total,
        )
