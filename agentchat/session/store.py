"""
SQLite-backed session directory and agent-state store.

Uses ``aiosqlite`` for async database access with a write lock to serialise
mutations (SQLite only supports one writer at a time in WAL mode).

Schema is version-tracked via a ``schema_version`` table.  Migrations are
applied automatically on ``init()``.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import aiosqlite

from agentchat.types import SessionDirectoryEntry, SessionState

MEMORY = ":memory:"

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            created_at INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS agent_state (
            session_id TEXT PRIMARY KEY,
            state TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        )""",
        """CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at)""",
    ],
}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """
    Async SQLite store for the session directory and per-session state.

    Usage::

        store = SessionStore("~/.agentchat/sessions.db")
        await store.init()
        await store.create_session(sid, "New Chat")
        await store.save_state(state)
        state = await store.load_state(sid)
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        if db_path == MEMORY:
            self.db_path = MEMORY
        else:
            path = Path(db_path).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(self.db_path)
        if self.db_path != MEMORY:
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SessionStore is not initialised -- call init() first")
        return self._db

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def _get_schema_version(self) -> int:
        """Return the current schema version, or 0 if not initialised."""
        cursor = await self.db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        row = await cursor.fetchone()
        if row is None:
            return 0
        cursor = await self.db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            return 0
        return int(row[0])

    async def _set_schema_version(self, version: int) -> None:
        cursor = await self.db.execute("SELECT COUNT(*) FROM schema_version")
        row = await cursor.fetchone()
        if row is None or row[0] == 0:
            await self.db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
        else:
            await self.db.execute(
                "UPDATE schema_version SET version = ?", (version,)
            )

    async def _run_migrations(self) -> None:
        """Apply any pending migrations sequentially."""
        current = await self._get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(
                    f"Missing migration for schema version {version}"
                )
            for stmt in stmts:
                await self.db.execute(stmt)
            await self._set_schema_version(version)

        await self.db.commit()

    async def get_schema_version(self) -> int:
        """Public accessor for the current schema version."""
        return await self._get_schema_version()

    # ------------------------------------------------------------------
    # Session directory
    # ------------------------------------------------------------------

    async def create_session(self, session_id: str, title: str) -> SessionDirectoryEntry:
        """Register a session.  Re-registering an id updates its title."""
        now = int(time.time() * 1000)
        async with self._write_lock:
            await self.db.execute(
                """INSERT INTO sessions (session_id, title, created_at) VALUES (?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE SET title = excluded.title""",
                (session_id, title, now),
            )
            await self.db.commit()
        entry = await self.get_session(session_id)
        assert entry is not None
        return entry

    async def get_session(self, session_id: str) -> SessionDirectoryEntry | None:
        cursor = await self.db.execute(
            "SELECT session_id, title, created_at FROM sessions WHERE session_id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return SessionDirectoryEntry(session_id=row[0], title=row[1], created_at=int(row[2]))

    async def list_sessions(self) -> list[SessionDirectoryEntry]:
        """Return all sessions, newest first."""
        cursor = await self.db.execute(
            "SELECT session_id, title, created_at FROM sessions ORDER BY created_at DESC, rowid DESC"
        )
        rows = await cursor.fetchall()
        return [
            SessionDirectoryEntry(session_id=row[0], title=row[1], created_at=int(row[2]))
            for row in rows
        ]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its agent state.  Returns ``False`` if unknown."""
        async with self._write_lock:
            cursor = await self.db.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            deleted = cursor.rowcount > 0
            await self.db.execute(
                "DELETE FROM agent_state WHERE session_id = ?", (session_id,)
            )
            await self.db.commit()
        return deleted

    # ------------------------------------------------------------------
    # Agent state
    # ------------------------------------------------------------------

    async def load_state(self, session_id: str) -> SessionState | None:
        cursor = await self.db.execute(
            "SELECT state FROM agent_state WHERE session_id = ?", (session_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return SessionState.from_dict(json.loads(row[0]))

    async def save_state(self, state: SessionState) -> None:
        payload = json.dumps(state.to_dict())
        now = int(time.time() * 1000)
        async with self._write_lock:
            await self.db.execute(
                """INSERT INTO agent_state (session_id, state, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(session_id) DO UPDATE
                   SET state = excluded.state, updated_at = excluded.updated_at""",
                (state.session_id, payload, now),
            )
            await self.db.commit()

    async def delete_state(self, session_id: str) -> None:
        async with self._write_lock:
            await self.db.execute(
                "DELETE FROM agent_state WHERE session_id = ?", (session_id,)
            )
            await self.db.commit()
