"""
reactloop/agent/context.py — Session-scoped message log

The executor's view of its session: an ordered, append-only list of
Messages held in memory while the executor is alive, loaded from and saved
to the SessionStore at run boundaries. After a save the live log is trimmed
to what the store kept, so it never outgrows the stored window. Only the
owning executor's task touches it, so there is no locking here.
"""

from __future__ import annotations

from reactloop.brain.types import Message
from reactloop.memory.session_store import SessionStore, truncate_history


class SessionContext:

    def __init__(self, session_id: str, store: SessionStore):
        self.session_id = session_id
        self._store = store
        self._messages: list[Message] = []

    @classmethod
    async def load(cls, session_id: str, store: SessionStore) -> "SessionContext":
        """Create a context seeded with whatever the store holds for session_id."""
        ctx = cls(session_id, store)
        ctx.replace(await ctx.fetch())
        return ctx

    def append(self, message: Message) -> None:
        self._messages.append(message)

    @property
    def messages(self) -> list[Message]:
        """A copy of the log; mutate through append()."""
        return list(self._messages)

    def replace(self, messages: list[Message]) -> None:
        self._messages = list(messages)

    async def fetch(self) -> list[Message]:
        """The durable copy; empty once it expired or was cleared."""
        return await self._store.get(self.session_id)

    async def save(self) -> None:
        """Persist the log (the store renews the TTL), then trim the live copy."""
        await self._store.save(self.session_id, self._messages)
        self._messages = truncate_history(self._messages, self._store.max_messages)

    async def clear(self) -> None:
        """Empty the in-memory log and drop the durable copy."""
        self._messages.clear()
        await self._store.clear(self.session_id)

    def __len__(self) -> int:
        return len(self._messages)

    def __repr__(self) -> str:
        return f"<SessionContext session={self.session_id} messages={len(self._messages)}>"
