"""
reactloop/memory/session_store.py — Session Store

Per-session ordered message log behind a get/save/clear interface.

  get(id)            -> ordered messages ([] if unknown or expired); renews TTL
  save(id, messages) -> overwrite, truncated to the newest max_messages, TTL renewed
  clear(id)          -> forget the session

Two backends:
  InMemorySessionStore  dict + asyncio.Lock, expiry checked lazily on access
  SqliteSessionStore    aiosqlite, one JSON row per session

Truncation keeps System messages outside the window so a long conversation
never loses its role grounding.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

import aiosqlite

from reactloop.brain.types import Message, Role
from reactloop.exceptions import SessionStoreError
from reactloop.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_MAX_MESSAGES = 100
DEFAULT_TTL_SECONDS = 24 * 3600.0


def truncate_history(messages: list[Message], max_messages: int) -> list[Message]:
    """
    Keep every System message plus the newest non-system messages, up to
    max_messages in total. Order is preserved.
    """
    if len(messages) <= max_messages:
        return list(messages)

    system = [m for m in messages if m.role == Role.SYSTEM]
    rest = [m for m in messages if m.role != Role.SYSTEM]
    budget = max(max_messages - len(system), 0)
    window = rest[-budget:] if budget else []

    # A tool result whose assistant tool_calls message fell outside the
    # window is meaningless to the provider (and rejected by OpenAI).
    while window and window[0].role == Role.TOOL:
        window.pop(0)

    return system + window


class SessionStore(ABC):
    """Abstract session store. All methods are coroutine-safe."""

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ):
        self.max_messages = max_messages
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, session_id: str) -> list[Message]:
        ...

    @abstractmethod
    async def save(self, session_id: str, messages: list[Message]) -> None:
        ...

    @abstractmethod
    async def clear(self, session_id: str) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources. No-op by default."""


# ─────────────────────────────────────────────────────────────────────────────
# In-memory backend
# ─────────────────────────────────────────────────────────────────────────────

class InMemorySessionStore(SessionStore):
    """
    Process-local store. Entries expire ttl_seconds after their last
    get/save; expired entries are dropped on next access.
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(max_messages, ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[list[Message], float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> list[Message]:
        async with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return []
            messages, expires_at = entry
            now = self._clock()
            if now >= expires_at:
                del self._entries[session_id]
                log.debug("session_store.expired", session_id=session_id)
                return []
            self._entries[session_id] = (messages, now + self.ttl_seconds)
            return list(messages)

    async def save(self, session_id: str, messages: list[Message]) -> None:
        kept = truncate_history(messages, self.max_messages)
        async with self._lock:
            self._entries[session_id] = (kept, self._clock() + self.ttl_seconds)
        log.debug(
            "session_store.saved",
            session_id=session_id,
            messages=len(kept),
            dropped=len(messages) - len(kept),
        )

    async def clear(self, session_id: str) -> None:
        async with self._lock:
            self._entries.pop(session_id, None)
        log.debug("session_store.cleared", session_id=session_id)

    async def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [sid for sid, (_, exp) in self._entries.items() if now >= exp]
            for sid in expired:
                del self._entries[sid]
        if expired:
            log.info("session_store.purged", count=len(expired))
        return len(expired)

    @property
    def count(self) -> int:
        """Number of stored sessions, expired or not. For tests and status."""
        return len(self._entries)


# ─────────────────────────────────────────────────────────────────────────────
# SQLite backend
# ─────────────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS session_messages (
    session_id     TEXT PRIMARY KEY,
    messages_json  TEXT NOT NULL,
    expires_at     REAL NOT NULL,
    updated_at     REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_messages_expires ON session_messages(expires_at);
"""


class SqliteSessionStore(SessionStore):
    """
    Durable store on aiosqlite. Call `await store.init()` before use.

    Usage:
        store = SqliteSessionStore("./data/sqlite/sessions.db")
        await store.init()
        await store.save("sess-1", messages)
    """

    def __init__(
        self,
        db_path: str = "./data/sqlite/sessions.db",
        max_messages: int = DEFAULT_MAX_MESSAGES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(max_messages, ttl_seconds)
        self.db_path = db_path
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the database file and tables if they don't exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("session_store.sqlite_initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise SessionStoreError(
                "SqliteSessionStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )
        return self._db

    async def get(self, session_id: str) -> list[Message]:
        db = self._require_db()
        now = self._clock()
        try:
            async with self._lock:
                async with db.execute(
                    "SELECT messages_json, expires_at FROM session_messages WHERE session_id = ?",
                    (session_id,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    return []
                raw, expires_at = row
                if now >= expires_at:
                    await db.execute(
                        "DELETE FROM session_messages WHERE session_id = ?", (session_id,)
                    )
                    await db.commit()
                    log.debug("session_store.expired", session_id=session_id)
                    return []
                await db.execute(
                    "UPDATE session_messages SET expires_at = ? WHERE session_id = ?",
                    (now + self.ttl_seconds, session_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise SessionStoreError(f"Failed to read session '{session_id}': {e}") from e

        return [Message.model_validate(m) for m in json.loads(raw)]

    async def save(self, session_id: str, messages: list[Message]) -> None:
        db = self._require_db()
        kept = truncate_history(messages, self.max_messages)
        payload = json.dumps([m.model_dump(mode="json") for m in kept])
        now = self._clock()
        try:
            async with self._lock:
                await db.execute(
                    """INSERT INTO session_messages
                       (session_id, messages_json, expires_at, updated_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(session_id) DO UPDATE SET
                         messages_json=excluded.messages_json,
                         expires_at=excluded.expires_at,
                         updated_at=excluded.updated_at""",
                    (session_id, payload, now + self.ttl_seconds, now),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise SessionStoreError(f"Failed to save session '{session_id}': {e}") from e
        log.debug("session_store.saved", session_id=session_id, messages=len(kept))

    async def clear(self, session_id: str) -> None:
        db = self._require_db()
        try:
            async with self._lock:
                await db.execute(
                    "DELETE FROM session_messages WHERE session_id = ?", (session_id,)
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise SessionStoreError(f"Failed to clear session '{session_id}': {e}") from e
        log.debug("session_store.cleared", session_id=session_id)

    async def purge_expired(self) -> int:
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                "DELETE FROM session_messages WHERE expires_at <= ?", (self._clock(),)
            )
            await db.commit()
        return cursor.rowcount or 0


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

async def create_session_store(settings) -> SessionStore:
    """Build (and initialise) the backend selected by settings.session."""
    cfg = settings.session
    if cfg.backend == "sqlite":
        store = SqliteSessionStore(
            cfg.sqlite_path,
            max_messages=cfg.max_messages,
            ttl_seconds=cfg.ttl_seconds,
        )
        await store.init()
        return store
    return InMemorySessionStore(max_messages=cfg.max_messages, ttl_seconds=cfg.ttl_seconds)
