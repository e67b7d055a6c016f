"""
SQLite-backed session store.

Uses ``aiosqlite`` with the store's write lock serialising appends (SQLite
only supports one writer at a time in WAL mode).  The schema is
version-tracked via a ``schema_version`` table and migrated on ``init()``.
"""

from __future__ import annotations

import json
from pathlib import Path

import aiosqlite

from agentloop.session.base import SessionStore
from agentloop.session.entries import SessionEntry

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS entries (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            entry_id TEXT NOT NULL UNIQUE,
            created_at REAL NOT NULL,
            is_compaction INTEGER NOT NULL DEFAULT 0,
            messages TEXT NOT NULL
        )""",
        """CREATE INDEX IF NOT EXISTS idx_entries_session ON entries(session_id, seq)""",
    ],
}


class SQLiteSessionStore(SessionStore):
    """
    Usage::

        async with SQLiteSessionStore("~/.agentloop/sessions.db") as store:
            await store.append(sid, entry)
            state = await store.load(sid)
    """

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.init()
        assert self._db is not None
        return self._db

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def get_schema_version(self) -> int:
        """Current schema version, or 0 if not initialised."""
        db = await self._conn()
        cursor = await db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return 0 if row is None else int(row[0])

    async def _run_migrations(self) -> None:
        assert self._db is not None
        current = await self.get_schema_version()
        if current >= SCHEMA_VERSION:
            return
        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)
            await self._db.execute("DELETE FROM schema_version")
            await self._db.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        await self._db.commit()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def _append(self, session_id: str, entry: SessionEntry) -> None:
        db = await self._conn()
        payload = json.dumps(entry.to_dict()["messages"], ensure_ascii=False)
        await db.execute(
            """INSERT INTO entries (session_id, entry_id, created_at, is_compaction, messages)
               VALUES (?, ?, ?, ?, ?)""",
            (session_id, entry.id, entry.created_at, int(entry.is_compaction), payload),
        )
        await db.commit()

    async def entries(self, session_id: str) -> list[SessionEntry]:
        db = await self._conn()
        cursor = await db.execute(
            """SELECT entry_id, created_at, is_compaction, messages
               FROM entries WHERE session_id = ? ORDER BY seq ASC""",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            SessionEntry.from_dict(
                {
                    "id": row[0],
                    "created_at": row[1],
                    "is_compaction": bool(row[2]),
                    "messages": json.loads(row[3]),
                }
            )
            for row in rows
        ]

    async def list_sessions(self) -> list[str]:
        db = await self._conn()
        cursor = await db.execute(
            "SELECT session_id, MAX(seq) AS last FROM entries GROUP BY session_id ORDER BY last DESC"
        )
        return [row[0] for row in await cursor.fetchall()]

    async def delete(self, session_id: str) -> bool:
        db = await self._conn()
        async with self._write_lock:
            cursor = await db.execute("DELETE FROM entries WHERE session_id = ?", (session_id,))
            await db.commit()
        return cursor.rowcount > 0
