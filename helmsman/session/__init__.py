"""Conversation recording with SQLite storage."""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Protocol

import aiosqlite

from helmsman.config import get_config
from helmsman.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class RecordableEntry(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


@dataclass
class Session:
    """A recorded conversation session."""

    id: str
    name: str
    entries: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)


class SessionManager:
    """Append-only conversation store backed by SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session manager.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_session ON entries(session_id, seq)"
            )
            await self._db.commit()
        return self._db

    async def create_session(self, name: str = "default", metadata: dict[str, Any] | None = None) -> Session:
        """Create and persist a new session."""
        db = await self._ensure_db()
        session = Session(id=str(uuid.uuid4()), name=name, metadata=metadata or {})
        await db.execute(
            "INSERT INTO sessions (id, name, created_at, updated_at, metadata) VALUES (?, ?, ?, ?, ?)",
            (session.id, session.name, session.created_at, session.updated_at, json.dumps(session.metadata)),
        )
        await db.commit()
        log.info("Created new session", session_id=session.id, name=name)
        return session

    async def _entries_for(self, session_id: str) -> list[dict[str, Any]]:
        db = await self._ensure_db()
        async with db.execute(
            "SELECT payload FROM entries WHERE session_id = ? ORDER BY seq",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session and its entries by ID."""
        db = await self._ensure_db()
        async with db.execute(
            "SELECT id, name, created_at, updated_at, metadata FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return Session(
            id=row[0],
            name=row[1],
            created_at=row[2],
            updated_at=row[3],
            metadata=json.loads(row[4]),
            entries=await self._entries_for(row[0]),
        )

    async def append_entries(self, session_id: str, entries: Iterable[dict[str, Any]]) -> int:
        """Append serialized entries in order; returns how many were written."""
        rows = [(session_id, json.dumps(entry, ensure_ascii=False), _utcnow_iso()) for entry in entries]
        if not rows:
            return 0
        db = await self._ensure_db()
        async with self._write_lock:
            await db.executemany(
                "INSERT INTO entries (session_id, payload, created_at) VALUES (?, ?, ?)",
                rows,
            )
            await db.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (_utcnow_iso(), session_id))
            await db.commit()
        return len(rows)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


class SessionRecorder:
    """Write conversation entries in the background.

    ``record`` returns immediately; writes happen in order on background tasks
    and failures are logged here instead of reaching the caller.
    """

    def __init__(self, manager: SessionManager):
        self.manager = manager
        self._pending: set[asyncio.Task[None]] = set()
        self._order = asyncio.Lock()
        self.failures = 0

    async def _write(self, session_id: str, payloads: list[dict[str, Any]]) -> None:
        async with self._order:
            try:
                await self.manager.append_entries(session_id, payloads)
            except Exception as e:
                self.failures += 1
                log.error("Failed to record conversation entries", session_id=session_id, count=len(payloads), error=str(e))

    def record(self, session_id: str, entries: Iterable[RecordableEntry]) -> None:
        payloads = [entry.to_dict() for entry in entries]
        if not payloads:
            return
        task = asyncio.create_task(self._write(session_id, payloads))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for every write scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        await self.manager.close()


__all__ = ["RecordableEntry", "Session", "SessionManager", "SessionRecorder"]
