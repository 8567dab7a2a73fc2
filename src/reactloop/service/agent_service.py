"""
reactloop/service/agent_service.py — Agent Service

The caller-facing surface over the engine. Owns the two process-wide
registries (session → executor, session → push channel), the drivers and
the session store, and turns every outcome into an AgentResponse.

  execute_task(prompt, session_id=None)      basic, blocking
  execute_advanced(request)                  overrides + persistence, blocking
  execute_stream(prompt, session_id=None)    basic, streaming → PushChannel
  execute_advanced_stream(request)           overrides, streaming → PushChannel
  get_status(session_id=None)                snapshot / aggregate
  reset_agent(session_id, clear_history)     back to IDLE
  close_stream(session_id)                   close notice, then evict

A request without a session id is ephemeral: it gets a fresh id whose
executor and stored history are dropped once the run ends.

Streaming sessions live exactly as long as their channel. Whatever ends the
channel (natural completion, close_stream, the watchdog timeout, a transport
failure) runs one hook that evicts both registry entries, even while the
background loop is still between iterations.
"""

from __future__ import annotations

import time
import uuid
from typing import Optional

from reactloop.agent.drivers import BlockingDriver, StreamingDriver
from reactloop.agent.executor import AgentExecutor
from reactloop.agent.factory import AgentFactory
from reactloop.agent.registry import AgentRegistry
from reactloop.agent.state import ExecutionState
from reactloop.exceptions import ReactLoopError, SessionStoreError, ValidationError
from reactloop.gateway.channel import (
    DEFAULT_QUEUE_SIZE,
    DEFAULT_TIMEOUT_SECONDS,
    ChannelRegistry,
    ChannelState,
    PushChannel,
)
from reactloop.gateway.protocol import make_error
from reactloop.memory.session_store import SessionStore, create_session_store
from reactloop.observability.logger import get_logger
from reactloop.service.models import AgentRequest, AgentResponse
from reactloop.tools.builtin import register_builtin_tools
from reactloop.tools.tool_bus import ToolBus
from reactloop.tools.tool_registry import ToolRegistry

log = get_logger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


class AgentService:
    """
    Args:
        factory:        Builds executors for new sessions.
        store:          Durable session store (shared with the factory).
        stream_timeout: Channel lifetime in seconds before the watchdog fires.
        queue_size:     Undelivered events a channel buffers before backpressure.
    """

    def __init__(
        self,
        factory: AgentFactory,
        store: SessionStore,
        *,
        stream_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.factory = factory
        self.store = store
        self.stream_timeout = stream_timeout
        self.queue_size = queue_size

        self.registry = AgentRegistry(factory)
        self.channels = ChannelRegistry()
        self.blocking = BlockingDriver()
        self.streaming = StreamingDriver()

    @classmethod
    async def build(
        cls,
        settings,
        llm=None,
        tools: Optional[ToolRegistry] = None,
    ) -> "AgentService":
        """
        Wire the full stack from settings. `tools` may carry caller
        capabilities; the built-in terminate tool is added and the registry
        frozen here. Without `llm` the configured provider is constructed.
        """
        if llm is None:
            from reactloop.brain import LLMClientFactory
            llm = LLMClientFactory.from_settings(settings)

        if tools is None:
            tools = ToolRegistry()
        if not tools.is_registered(settings.tools.terminate_tool):
            register_builtin_tools(tools, settings.tools.terminate_tool)
        tools.freeze()

        store = await create_session_store(settings)
        bus = ToolBus.from_settings(tools, settings)
        factory = AgentFactory.from_settings(settings, llm, bus, store)

        log.info(
            "agent_service.ready",
            agent=settings.agent.name,
            tools=len(tools),
            session_backend=settings.session.backend,
        )
        return cls(
            factory,
            store,
            stream_timeout=settings.stream.timeout_seconds,
            queue_size=settings.stream.queue_size,
        )

    # ── Blocking ──────────────────────────────────────────────────────────────

    async def execute_task(self, prompt: str, session_id: Optional[str] = None) -> AgentResponse:
        """Basic blocking request."""
        ephemeral = session_id is None
        sid = session_id or new_session_id()
        try:
            return await self._run_blocking(sid, prompt, persist=not ephemeral)
        finally:
            if ephemeral:
                await self._discard(sid)

    async def execute_advanced(self, request: AgentRequest) -> AgentResponse:
        """Blocking request with prompt/step overrides; history is persisted."""
        ephemeral = request.session_id is None
        sid = request.session_id or new_session_id()
        try:
            return await self._run_blocking(
                sid,
                request.prompt,
                system_prompt=request.system_prompt,
                max_steps=request.max_steps,
                persist=not ephemeral,
            )
        finally:
            if ephemeral:
                await self._discard(sid)

    async def _run_blocking(
        self,
        sid: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_steps: Optional[int] = None,
        persist: bool = True,
    ) -> AgentResponse:
        started = time.monotonic()
        try:
            executor = await self.registry.get_or_create(sid)
            await self._prepare(executor, system_prompt, max_steps, refresh=persist)
            generation = executor.generation
            result = await self.blocking.run(executor, prompt)
        except ValidationError as e:
            return AgentResponse.error(str(e), session_id=sid)
        except ReactLoopError as e:
            log.error("agent_service.run_failed", session_id=sid, error=str(e))
            return AgentResponse.error(f"Execution error: {e}", session_id=sid)

        elapsed_ms = round((time.monotonic() - started) * 1000, 2)
        if executor.generation != generation + 1:
            # reset_agent() ran mid-flight; the log now belongs to a newer run
            log.warning("agent_service.run_superseded", session_id=sid, elapsed_ms=elapsed_ms)
            return AgentResponse.error(result, session_id=sid, result=result)

        if persist:
            await self._save(executor)

        state = executor.state
        log.info("agent_service.run_complete", session_id=sid, state=state.value, elapsed_ms=elapsed_ms)
        if state is ExecutionState.ERROR:
            return AgentResponse.error(result, session_id=sid, agent_state=state.value, result=result)
        return AgentResponse.success(
            result=result,
            agent_state=state.value,
            session_id=sid,
            execution_time_ms=elapsed_ms,
        )

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def execute_stream(self, prompt: str, session_id: Optional[str] = None) -> PushChannel:
        """Basic streaming request. Consume the returned channel with `async for`."""
        return await self._run_streaming(session_id, prompt)

    async def execute_advanced_stream(self, request: AgentRequest) -> PushChannel:
        return await self._run_streaming(
            request.session_id,
            request.prompt,
            system_prompt=request.system_prompt,
            max_steps=request.max_steps,
        )

    async def _run_streaming(
        self,
        session_id: Optional[str],
        prompt: str,
        system_prompt: Optional[str] = None,
        max_steps: Optional[int] = None,
    ) -> PushChannel:
        ephemeral = session_id is None
        sid = session_id or new_session_id()

        try:
            executor = await self.registry.get_or_create(sid)
        except ReactLoopError as e:
            log.error("agent_service.stream_failed", session_id=sid, error=str(e))
            return await self._rejected_stream(sid, f"Execution error: {e}", ephemeral)

        channel = PushChannel(sid, timeout_seconds=self.stream_timeout, queue_size=self.queue_size)
        try:
            await self._prepare(executor, system_prompt, max_steps, refresh=not ephemeral)
            self.streaming.start(executor, prompt, channel)
        except ValidationError as e:
            return await self._rejected_stream(sid, str(e), ephemeral)
        except ReactLoopError as e:
            log.error("agent_service.stream_failed", session_id=sid, error=str(e))
            return await self._rejected_stream(sid, f"Execution error: {e}", ephemeral)

        channel.on_end(self._stream_end_hook(executor, ephemeral))
        await self.channels.add(channel)
        channel.start()
        if not channel.is_open:
            # ended before it was registered
            await self.channels.remove(sid, channel)

        log.info("agent_service.stream_started", session_id=sid, ephemeral=ephemeral)
        return channel

    def _stream_end_hook(self, executor: AgentExecutor, ephemeral: bool):
        sid = executor.session_id
        generation = executor.generation

        async def on_end(channel: PushChannel) -> None:
            await self.channels.remove(sid, channel)
            await self.registry.remove(sid, executor)
            if executor.generation == generation:
                executor.interrupt(
                    ExecutionState.FINISHED
                    if channel.state is ChannelState.COMPLETED
                    else ExecutionState.ERROR
                )
            if ephemeral:
                await self._discard(sid)
            else:
                await self._save(executor)
            log.info("agent_service.stream_released", session_id=sid, channel_state=channel.state.value)

        return on_end

    async def _rejected_stream(self, sid: str, message: str, ephemeral: bool) -> PushChannel:
        """A channel that only carries the rejection, already completed."""
        channel = PushChannel(sid, timeout_seconds=self.stream_timeout, queue_size=self.queue_size)
        await channel.send(make_error(sid, message))
        await channel.complete()
        if ephemeral:
            await self._discard(sid)
        log.warning("agent_service.stream_rejected", session_id=sid, reason=message)
        return channel

    # ── Session operations ────────────────────────────────────────────────────

    async def get_status(self, session_id: Optional[str] = None) -> AgentResponse:
        if session_id is None:
            data = await self.registry.status()
            data["total_active_streams"] = await self.channels.get_count()
            data["active_streams"] = await self.channels.list_sessions()
            return AgentResponse.success(message="status", data=data)

        snapshot = await self.registry.status(session_id)
        if snapshot is None:
            return AgentResponse.warning(f"No active agent for session '{session_id}'", session_id=session_id)
        snapshot["is_stream_active"] = await self.channels.is_active(session_id)
        return AgentResponse.success(
            agent_state=snapshot["agent_state"],
            session_id=session_id,
            data=snapshot,
        )

    async def reset_agent(self, session_id: str, clear_history: bool = False) -> AgentResponse:
        """
        Put the session's executor back to IDLE. An open stream for the
        session is closed. The stored history survives unless clear_history
        is set. A run still in flight is cancelled: once its pending THINK or ACT
        returns, the loop ends without touching the log and its caller gets
        an error response.
        """
        executor = await self.registry.get(session_id)
        if executor is None:
            return AgentResponse.warning(f"No active agent for session '{session_id}'", session_id=session_id)

        executor.reset()
        channel = await self.channels.get(session_id)
        if channel is not None:
            await channel.close("agent reset")
        if clear_history:
            await executor.context.clear()

        log.info("agent_service.reset", session_id=session_id, clear_history=clear_history)
        return AgentResponse.success(
            message="agent reset",
            agent_state=executor.state.value,
            session_id=session_id,
        )

    async def close_stream(self, session_id: str) -> AgentResponse:
        """Send the close notice, end the channel and evict the session."""
        channel = await self.channels.get(session_id)
        if channel is None or not channel.is_open:
            return AgentResponse.warning(f"No active stream for session '{session_id}'", session_id=session_id)

        await channel.close("closed by caller")
        # the end hook already evicted; repeat in case the channel was replaced
        await self.channels.remove(session_id, channel)
        await self.registry.remove(session_id)
        return AgentResponse.success(
            message="stream closed",
            agent_state=ExecutionState.IDLE.value,
            session_id=session_id,
        )

    async def shutdown(self) -> None:
        """Close open streams, stop background tasks, close the store."""
        for sid in await self.channels.list_sessions():
            channel = await self.channels.get(sid)
            if channel is not None:
                await channel.close("service shutting down")
        await self.streaming.shutdown()
        await self.store.close()
        log.info("agent_service.stopped")

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    async def _prepare(
        executor: AgentExecutor,
        system_prompt: Optional[str],
        max_steps: Optional[int],
        refresh: bool = True,
    ) -> None:
        # a finished session takes a new prompt without an explicit reset
        if executor.state.is_terminal:
            executor.reset()
        if refresh:
            await executor.refresh()
        if system_prompt or max_steps:
            executor.apply_overrides(system_prompt=system_prompt, max_steps=max_steps)

    async def _save(self, executor: AgentExecutor) -> None:
        try:
            await executor.context.save()
        except SessionStoreError as e:
            log.warning("agent_service.save_failed", session_id=executor.session_id, error=str(e))

    async def _discard(self, sid: str) -> None:
        await self.registry.remove(sid)
        try:
            await self.store.clear(sid)
        except SessionStoreError as e:
            log.warning("agent_service.discard_failed", session_id=sid, error=str(e))
