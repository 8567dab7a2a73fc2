"""
tests/unit/test_agent_service.py — Agent Service Tests

Exercises the caller-facing operations end to end over real registries,
drivers, channels and an in-memory session store, with a scripted THINK:

  - basic/advanced blocking requests, ephemeral vs persistent sessions
  - streaming requests and channel-hook eviction (complete, close, timeout)
  - status / reset / close-stream responses, including warnings
  - reset during a run cancels it; only one THINK per session is ever in flight
  - the live log stays within the stored window and honours expiry
  - AgentService.build() wiring from settings
"""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest
from pydantic import ValidationError as PydanticValidationError

from reactloop.agent.factory import AgentFactory, AgentProfile
from reactloop.agent.strategies import ToolBusActor
from reactloop.brain.llm_client import BaseLLMClient
from reactloop.brain.types import LLMConfig, LLMResponse, Message, Role, ToolCall, ToolSchema
from reactloop.config.settings import Settings
from reactloop.gateway.channel import ChannelState
from reactloop.memory.session_store import InMemorySessionStore
from reactloop.service.agent_service import AgentService
from reactloop.service.models import AgentRequest, ResponseStatus
from reactloop.tools.builtin import register_builtin_tools
from reactloop.tools.tool_bus import ToolBus
from reactloop.tools.tool_registry import ToolRegistry


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


class PromptThinker:
    """
    Decides from the latest user prompt:
      "list ..." → list_files (terminating)
      "loop ..." → echo forever
      "fail ..." → raise
      "slow ..." → wait for `gate`, then narrate
      anything else → narrate "Hello!"
    """

    def __init__(self):
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.system_prompts: list[str] = []
        self.active = 0
        self.max_active = 0

    async def think(self, history, system_prompt, capabilities):
        self.system_prompts.append(system_prompt)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await self._decide(history)
        finally:
            self.active -= 1

    async def _decide(self, history):
        prompt = next(m.content for m in reversed(history) if m.role is Role.USER)
        if prompt.startswith("list"):
            return LLMResponse(tool_calls=[ToolCall(id="c1", name="list_files", arguments={})])
        if prompt.startswith("loop"):
            return LLMResponse(tool_calls=[ToolCall(id="c1", name="echo", arguments={"text": "again"})])
        if prompt.startswith("fail"):
            raise ConnectionError("model offline")
        if prompt.startswith("slow"):
            self.entered.set()
            await self.gate.wait()
        return LLMResponse(content="Hello!")


def make_service(
    stream_timeout: float = 5.0,
    store: Optional[InMemorySessionStore] = None,
) -> tuple[AgentService, PromptThinker, InMemorySessionStore]:
    tools = ToolRegistry()

    @tools.register(name="list_files", description="List files", terminates=True)
    async def list_files() -> str:
        return "a.txt\nb.txt"

    @tools.register(
        name="echo",
        description="Echo",
        parameters={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    )
    async def echo(text: str) -> str:
        return text

    register_builtin_tools(tools)
    tools.freeze()

    thinker = PromptThinker()
    if store is None:
        store = InMemorySessionStore()
    factory = AgentFactory(
        AgentProfile(name="tester", system_prompt="default role", step_delay=0.0, max_steps=5),
        thinker,
        ToolBusActor(ToolBus(tools)),
        store,
    )
    return AgentService(factory, store, stream_timeout=stream_timeout), thinker, store


async def collect(channel) -> list:
    return [event async for event in channel]


async def wait_streams(service: AgentService) -> None:
    tasks = list(service.streaming._tasks)
    if tasks:
        await asyncio.wait(tasks, timeout=2.0)


# ─────────────────────────────────────────────────────────────────────────────
# Request models
# ─────────────────────────────────────────────────────────────────────────────


class TestAgentRequest:
    def test_blank_prompt_rejected(self):
        with pytest.raises(PydanticValidationError):
            AgentRequest(prompt="  ")

    def test_non_positive_max_steps_rejected(self):
        with pytest.raises(PydanticValidationError):
            AgentRequest(prompt="go", max_steps=0)

    def test_optional_fields(self):
        request = AgentRequest(prompt="go")
        assert request.session_id is None
        assert request.system_prompt is None
        assert request.max_steps is None


# ─────────────────────────────────────────────────────────────────────────────
# Blocking
# ─────────────────────────────────────────────────────────────────────────────


class TestBlocking:
    @pytest.mark.asyncio
    async def test_basic_request_is_ephemeral(self):
        service, _, store = make_service()

        response = await service.execute_task("say hello")

        assert response.status is ResponseStatus.SUCCESS
        assert response.result == "Hello!"
        assert response.agent_state == "FINISHED"
        assert response.session_id
        assert response.execution_time_ms is not None
        assert service.registry.count == 0
        assert store.count == 0

    @pytest.mark.asyncio
    async def test_list_files_scenario(self):
        service, _, _ = make_service()
        response = await service.execute_task("list files")
        assert response.result == "Tool 'list_files' returned: a.txt\nb.txt"
        assert response.agent_state == "FINISHED"

    @pytest.mark.asyncio
    async def test_session_history_persists_across_requests(self):
        service, _, store = make_service()

        await service.execute_task("say hello", session_id="s1")
        second = await service.execute_task("say hello again", session_id="s1")

        assert second.ok
        stored = await store.get("s1")
        assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        status = await service.get_status("s1")
        assert status.ok
        assert status.data["message_count"] == 4

    @pytest.mark.asyncio
    async def test_advanced_overrides(self):
        service, thinker, _ = make_service()

        response = await service.execute_advanced(
            AgentRequest(prompt="loop forever", session_id="s1", system_prompt="Be terse.", max_steps=2)
        )

        assert response.ok
        assert response.agent_state == "FINISHED"
        assert response.result.endswith("Terminated: reached max steps (2)")
        assert thinker.system_prompts == ["Be terse.", "Be terse."]

    @pytest.mark.asyncio
    async def test_error_state_reported_as_error(self):
        service, _, _ = make_service()

        response = await service.execute_task("fail please")

        assert response.status is ResponseStatus.ERROR
        assert response.agent_state == "ERROR"
        assert "Halted after 3 consecutive failures" in response.result

    @pytest.mark.asyncio
    async def test_blank_prompt_is_error_response(self):
        service, _, _ = make_service()
        response = await service.execute_task("   ")
        assert response.status is ResponseStatus.ERROR
        assert response.message == "Prompt must not be blank"
        assert service.registry.count == 0


# ─────────────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────────────


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_completes_and_evicts(self):
        service, _, _ = make_service()

        channel = await service.execute_stream("say hello", session_id="s1")
        events = await asyncio.wait_for(collect(channel), timeout=2.0)
        await wait_streams(service)

        assert [e.type for e in events] == ["start", "step", "done"]
        assert events[1].text == "Hello!"
        assert service.registry.count == 0
        assert service.channels.count == 0
        assert (await service.get_status("s1")).status is ResponseStatus.WARNING

    @pytest.mark.asyncio
    async def test_persistent_stream_saves_history(self):
        service, _, store = make_service()
        channel = await service.execute_stream("say hello", session_id="s1")
        await collect(channel)
        await wait_streams(service)
        assert len(await store.get("s1")) == 2

    @pytest.mark.asyncio
    async def test_advanced_stream(self):
        service, thinker, _ = make_service()
        channel = await service.execute_advanced_stream(
            AgentRequest(prompt="loop", system_prompt="Stream role.", max_steps=1)
        )
        events = await asyncio.wait_for(collect(channel), timeout=2.0)
        assert [e.data.get("kind") for e in events if e.type == "step"] == ["action", "truncated"]
        assert thinker.system_prompts == ["Stream role."]

    @pytest.mark.asyncio
    async def test_rejected_stream_carries_error(self):
        service, _, _ = make_service()

        channel = await service.execute_stream("")
        events = await collect(channel)

        assert [e.type for e in events] == ["error"]
        assert events[0].text == "Prompt must not be blank"
        assert channel.state is ChannelState.COMPLETED
        assert service.registry.count == 0
        assert service.channels.count == 0

    @pytest.mark.asyncio
    async def test_busy_session_rejects_second_run(self):
        service, thinker, _ = make_service()
        channel = await service.execute_stream("slow task", session_id="s1")
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)

        blocking = await service.execute_task("say hello", session_id="s1")
        rejected = await collect(await service.execute_stream("say hello", session_id="s1"))

        assert blocking.status is ResponseStatus.ERROR
        assert "RUNNING" in blocking.message
        assert [e.type for e in rejected] == ["error"]
        assert channel.is_open
        assert await service.channels.get("s1") is channel

        thinker.gate.set()
        events = await asyncio.wait_for(collect(channel), timeout=2.0)
        assert events[-1].type == "done"

    @pytest.mark.asyncio
    async def test_close_stream_sends_notice_and_evicts(self):
        service, thinker, _ = make_service()
        channel = await service.execute_stream("slow task", session_id="s1")
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)

        status = await service.get_status("s1")
        assert status.data["is_stream_active"] is True
        assert status.agent_state == "RUNNING"

        closed = await service.close_stream("s1")
        assert closed.status is ResponseStatus.SUCCESS
        assert closed.message == "stream closed"
        assert closed.agent_state == "IDLE"

        events = await collect(channel)
        assert events[-1].type == "close"
        assert (await service.get_status("s1")).status is ResponseStatus.WARNING

        again = await service.close_stream("s1")
        assert again.status is ResponseStatus.WARNING

        thinker.gate.set()
        await wait_streams(service)
        assert [e.type for e in events].count("close") == 1

    @pytest.mark.asyncio
    async def test_timeout_evicts_session(self):
        service, thinker, _ = make_service(stream_timeout=0.05)
        channel = await service.execute_stream("slow task", session_id="s1")

        assert await asyncio.wait_for(channel.wait_ended(), timeout=1.0) is ChannelState.TIMED_OUT
        assert service.registry.count == 0
        assert service.channels.count == 0

        thinker.gate.set()
        await wait_streams(service)


# ─────────────────────────────────────────────────────────────────────────────
# Status / reset
# ─────────────────────────────────────────────────────────────────────────────


class TestSessionOperations:
    @pytest.mark.asyncio
    async def test_status_unknown_session_warns(self):
        service, _, _ = make_service()
        response = await service.get_status("nobody")
        assert response.status is ResponseStatus.WARNING
        assert "nobody" in response.message

    @pytest.mark.asyncio
    async def test_aggregate_status(self):
        service, thinker, _ = make_service()
        await service.execute_task("say hello", session_id="a")
        await service.execute_stream("slow", session_id="b")
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)

        response = await service.get_status()

        assert response.ok
        assert response.data["total_active_agents"] == 2
        assert sorted(response.data["active_sessions"]) == ["a", "b"]
        assert response.data["total_active_streams"] == 1
        assert response.data["active_streams"] == ["b"]

        await service.close_stream("b")
        thinker.gate.set()
        await wait_streams(service)

    @pytest.mark.asyncio
    async def test_reset_unknown_session_warns(self):
        service, _, _ = make_service()
        response = await service.reset_agent("nobody")
        assert response.status is ResponseStatus.WARNING

    @pytest.mark.asyncio
    async def test_reset_keeps_history_by_default(self):
        service, _, store = make_service()
        await service.execute_task("fail", session_id="s1")

        response = await service.reset_agent("s1")

        assert response.ok
        assert response.agent_state == "IDLE"
        status = await service.get_status("s1")
        assert status.data["current_step"] == 0
        assert status.data["consecutive_failures"] == 0
        assert len(await store.get("s1")) > 0

    @pytest.mark.asyncio
    async def test_reset_with_clear_history(self):
        service, _, store = make_service()
        await service.execute_task("say hello", session_id="s1")

        await service.reset_agent("s1", clear_history=True)

        assert await store.get("s1") == []
        assert (await service.get_status("s1")).data["message_count"] == 0

    @pytest.mark.asyncio
    async def test_reset_closes_open_stream(self):
        service, thinker, _ = make_service()
        channel = await service.execute_stream("slow", session_id="s1")
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)

        response = await service.reset_agent("s1")

        assert response.agent_state == "IDLE"
        events = await collect(channel)
        assert events[-1].text == "stream closed: agent reset"
        thinker.gate.set()
        await wait_streams(service)

    @pytest.mark.asyncio
    async def test_reset_cancels_inflight_blocking_run(self):
        service, thinker, store = make_service()
        first = asyncio.create_task(service.execute_task("slow one", session_id="s1"))
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)

        reset = await service.reset_agent("s1")
        second = await service.execute_task("say hello", session_id="s1")
        old = await first

        assert reset.agent_state == "IDLE"
        assert thinker.max_active == 1
        assert old.status is ResponseStatus.ERROR
        assert "cancelled" in old.message
        assert second.ok
        assert second.result == "Hello!"
        assert [m.content for m in await store.get("s1")] == ["say hello", "Hello!"]

    @pytest.mark.asyncio
    async def test_reset_then_slow_run_keeps_one_think_in_flight(self):
        service, thinker, _ = make_service()
        first = asyncio.create_task(service.execute_task("slow one", session_id="s1"))
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)

        await service.reset_agent("s1")
        thinker.entered.clear()
        second = asyncio.create_task(service.execute_task("slow two", session_id="s1"))
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)
        thinker.gate.set()
        old, new = await asyncio.gather(first, second)

        assert thinker.max_active == 1
        assert old.status is ResponseStatus.ERROR
        assert new.ok
        assert (await service.get_status("s1")).data["agent_state"] == "FINISHED"


# ─────────────────────────────────────────────────────────────────────────────
# History window
# ─────────────────────────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestHistoryWindow:
    @pytest.mark.asyncio
    async def test_live_log_stays_within_store_window(self):
        service, _, store = make_service(store=InMemorySessionStore(max_messages=10))

        for i in range(6):
            response = await service.execute_task(f"say hello {i}", session_id="s1")
            assert response.ok
            executor = await service.registry.get("s1")
            assert len(executor.context) <= 10

        assert len(await store.get("s1")) == 10
        assert executor.context.messages[-2].content == "say hello 5"

    @pytest.mark.asyncio
    async def test_expired_history_is_not_replayed(self):
        clock = FakeClock()
        service, _, _ = make_service(store=InMemorySessionStore(ttl_seconds=60, clock=clock))
        await service.execute_task("say hello", session_id="s1")

        clock.now += 120
        await service.execute_task("say hi again", session_id="s1")

        executor = await service.registry.get("s1")
        assert [m.content for m in executor.context.messages] == ["say hi again", "Hello!"]

    @pytest.mark.asyncio
    async def test_externally_cleared_history_is_not_replayed(self):
        service, _, store = make_service()
        await service.execute_task("say hello", session_id="s1")

        await store.clear("s1")
        await service.execute_task("say hi again", session_id="s1")

        assert [m.content for m in await store.get("s1")] == ["say hi again", "Hello!"]


# ─────────────────────────────────────────────────────────────────────────────
# build()
# ─────────────────────────────────────────────────────────────────────────────


class EchoLLM(BaseLLMClient):
    def __init__(self):
        super().__init__()
        self.tools_seen: list[Optional[list[ToolSchema]]] = []

    async def generate(self, messages: list[Message], config: LLMConfig, tools=None) -> LLMResponse:
        self.tools_seen.append(tools)
        return LLMResponse(content=f"echo: {messages[-1].content}")

    async def stream(self, messages, config):
        yield "unused"

    async def health_check(self) -> bool:
        return True


class TestBuild:
    @pytest.mark.asyncio
    async def test_build_wires_builtin_tools(self):
        llm = EchoLLM()
        settings = Settings(agent={"step_delay_ms": 0, "next_step_prompt": ""})
        service = await AgentService.build(settings, llm=llm)
        try:
            response = await service.execute_task("ping")
        finally:
            await service.shutdown()

        assert response.result == "echo: ping"
        assert [t.name for t in llm.tools_seen[0]] == ["do_terminate"]
        assert service.stream_timeout == settings.stream.timeout_seconds

    @pytest.mark.asyncio
    async def test_build_keeps_caller_tools(self):
        tools = ToolRegistry()

        @tools.register(name="lookup", description="Look something up")
        def lookup() -> str:
            return "found"

        service = await AgentService.build(Settings(), llm=EchoLLM(), tools=tools)
        try:
            assert tools.is_frozen
            assert set(tools.list_names()) == {"lookup", "do_terminate"}
        finally:
            await service.shutdown()
