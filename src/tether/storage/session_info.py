"""Per-conversation session info storage using SQLite.

Holds bookkeeping the engine's own history does not record: the permission
mode a conversation ran with, the repository HEAD it started from, and which
conversation continued it.
"""

from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from tether.schemas.events import utc_timestamp
from tether.schemas.messages import SessionInfo
from tether.utils.telemetry import get_logger

_UPDATABLE_FIELDS = ("permission_mode", "continuation_session_id", "initial_commit_head")


class SessionInfoBackend(Protocol):
    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def get_session_info(self, session_id: str) -> SessionInfo: ...

    async def update_session_info(self, session_id: str, **fields: Any) -> SessionInfo: ...

    async def sync_missing_sessions(self, session_ids: list[str]) -> int: ...


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown session info fields: {sorted(unknown)}")


class SessionInfoStore:
    """SQLite-backed session info store.

    Missing conversations read as default records, so callers never need to
    create an entry before updating it.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        """Initialize session info store.

        Args:
            db_path: Path to SQLite database file (":memory:" for in-memory)
        """
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._logger = get_logger("tether.storage.session_info")

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS session_info (
                session_id TEXT PRIMARY KEY,
                permission_mode TEXT NOT NULL DEFAULT 'default',
                continuation_session_id TEXT NOT NULL DEFAULT '',
                initial_commit_head TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """
        )
        await self._db.commit()

        self._logger.info("SessionInfoStore initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
        self._logger.info("SessionInfoStore closed")

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("SessionInfoStore not initialized")
        return self._db

    async def get_session_info(self, session_id: str) -> SessionInfo:
        """Read a conversation's info, or defaults if none is stored.

        Raises:
            RuntimeError: If the store is not initialized
        """
        async with self._conn().execute(
            """
            SELECT permission_mode, continuation_session_id, initial_commit_head,
                   created_at, updated_at
            FROM session_info WHERE session_id = ?
            """,
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return SessionInfo(session_id=session_id)
        return SessionInfo(
            session_id=session_id,
            permission_mode=row[0],
            continuation_session_id=row[1],
            initial_commit_head=row[2],
            created_at=row[3],
            updated_at=row[4],
        )

    async def update_session_info(self, session_id: str, **fields: Any) -> SessionInfo:
        """Merge fields into a conversation's info, creating it if needed.

        Args:
            session_id: Conversation to update
            **fields: Any of permission_mode, continuation_session_id,
                initial_commit_head

        Returns:
            The stored record after the update

        Raises:
            ValueError: If an unknown field is given
            RuntimeError: If the store is not initialized
        """
        _check_fields(fields)
        db = self._conn()

        current = await self.get_session_info(session_id)
        updated = current.model_copy(update={**fields, "updated_at": utc_timestamp()})

        await db.execute(
            """
            INSERT INTO session_info (
                session_id, permission_mode, continuation_session_id,
                initial_commit_head, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                permission_mode = excluded.permission_mode,
                continuation_session_id = excluded.continuation_session_id,
                initial_commit_head = excluded.initial_commit_head,
                updated_at = excluded.updated_at
            """,
            (
                updated.session_id,
                updated.permission_mode,
                updated.continuation_session_id,
                updated.initial_commit_head,
                updated.created_at,
                updated.updated_at,
            ),
        )
        await db.commit()

        self._logger.debug(
            "Session info updated", session_id=session_id, fields=sorted(fields)
        )
        return updated

    async def sync_missing_sessions(self, session_ids: list[str]) -> int:
        """Create default records for conversations that have none.

        Returns:
            Number of records created
        """
        db = self._conn()
        now = utc_timestamp()
        created = 0
        for session_id in session_ids:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO session_info (session_id, created_at, updated_at)
                VALUES (?, ?, ?)
                """,
                (session_id, now, now),
            )
            created += cursor.rowcount
            await cursor.close()
        await db.commit()

        if created:
            self._logger.info("Synced missing session info", created=created)
        return created


class InMemorySessionInfoStore:
    """In-memory session info store for testing.

    Provides the same interface as SessionInfoStore without SQLite.
    """

    def __init__(self) -> None:
        self._entries: dict[str, SessionInfo] = {}
        self._logger = get_logger("tether.storage.session_info.memory")

    async def initialize(self) -> None:
        self._logger.info("InMemorySessionInfoStore initialized")

    async def close(self) -> None:
        self._entries.clear()

    async def get_session_info(self, session_id: str) -> SessionInfo:
        entry = self._entries.get(session_id)
        if entry is None:
            return SessionInfo(session_id=session_id)
        return entry.model_copy()

    async def update_session_info(self, session_id: str, **fields: Any) -> SessionInfo:
        _check_fields(fields)
        current = self._entries.get(session_id) or SessionInfo(session_id=session_id)
        updated = current.model_copy(update={**fields, "updated_at": utc_timestamp()})
        self._entries[session_id] = updated
        return updated.model_copy()

    async def sync_missing_sessions(self, session_ids: list[str]) -> int:
        created = 0
        for session_id in session_ids:
            if session_id not in self._entries:
                self._entries[session_id] = SessionInfo(session_id=session_id)
                created += 1
        return created
