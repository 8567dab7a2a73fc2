"""
reactloop/agent/registry.py — Session/Agent Registry

Owns every live AgentExecutor. Maps session_id → executor.

The lock only guards the maps and is never held across an await. Creation
goes through a per-id pending future: the first caller for an id builds
the executor outside the lock, later callers for the same id wait on that
future, and callers for other ids are never held up by a slow store read.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from reactloop.agent.executor import AgentExecutor
from reactloop.agent.factory import AgentFactory
from reactloop.observability.logger import get_logger

log = get_logger(__name__)


class AgentRegistry:
    """
    Async-safe executor registry, shared by every caller in the process.

    Executors are created on demand through the factory and live until
    remove() is called (end of an ephemeral run, stream close/timeout/error).
    """

    def __init__(self, factory: AgentFactory):
        self._factory = factory
        self._agents: dict[str, AgentExecutor] = {}
        self._creating: dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, session_id: str) -> AgentExecutor:
        """Return the live executor for session_id, building it if absent."""
        while True:
            async with self._lock:
                executor = self._agents.get(session_id)
                if executor is not None:
                    return executor
                pending = self._creating.get(session_id)
                if pending is None:
                    pending = asyncio.get_running_loop().create_future()
                    self._creating[session_id] = pending
                    break
            # someone else is building this id; look again once they are done.
            # wait() rather than await so a cancelled waiter leaves the future alone
            await asyncio.wait({pending})

        try:
            executor = await self._factory.create(session_id)
            async with self._lock:
                self._agents[session_id] = executor
        finally:
            # success or failure, waiters wake up and re-check the map
            del self._creating[session_id]
            pending.set_result(None)

        log.info("agent_registry.created", session_id=session_id, agent=executor.name)
        return executor

    async def get(self, session_id: str) -> Optional[AgentExecutor]:
        async with self._lock:
            return self._agents.get(session_id)

    async def remove(
        self,
        session_id: str,
        executor: Optional[AgentExecutor] = None,
    ) -> Optional[AgentExecutor]:
        """
        Evict an executor. Returns it, or None if it wasn't registered. If
        executor is given, only evict it when it is still the registered one.
        """
        async with self._lock:
            current = self._agents.get(session_id)
            if current is None or (executor is not None and current is not executor):
                return None
            del self._agents[session_id]
        log.info("agent_registry.removed", session_id=session_id)
        return current

    async def list_sessions(self) -> list[str]:
        async with self._lock:
            return list(self._agents.keys())

    async def get_count(self) -> int:
        async with self._lock:
            return len(self._agents)

    async def status(self, session_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """
        Snapshot of one executor (None if absent), or with no id an
        aggregate of every live session.
        """
        async with self._lock:
            if session_id is not None:
                executor = self._agents.get(session_id)
                return executor.status() if executor is not None else None
            return {
                "total_active_agents": len(self._agents),
                "active_sessions": list(self._agents.keys()),
            }

    @property
    def count(self) -> int:
        """Lock-free count for synchronous callers such as tests."""
        return len(self._agents)
