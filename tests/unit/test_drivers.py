"""
tests/unit/test_drivers.py — Blocking and Streaming Driver Tests

Covers:
  - blocking run returns the joined step text; validation errors propagate
  - streaming run pushes start → step… → done, each step as it completes
  - uncaught loop errors become an error event and complete the channel
  - close / timeout observed between iterations, never mid-call
  - shutdown cancels outstanding stream tasks
"""

from __future__ import annotations

import asyncio

import pytest

from reactloop.agent.breaker import CircuitBreaker
from reactloop.agent.context import SessionContext
from reactloop.agent.drivers import BlockingDriver, StreamingDriver
from reactloop.agent.executor import AgentExecutor
from reactloop.agent.state import ExecutionState
from reactloop.agent.strategies import ToolBusActor
from reactloop.brain.types import LLMResponse, ToolCall
from reactloop.exceptions import ValidationError
from reactloop.gateway.channel import ChannelState, PushChannel
from reactloop.memory.session_store import InMemorySessionStore
from reactloop.tools.builtin import register_builtin_tools
from reactloop.tools.tool_bus import ToolBus
from reactloop.tools.tool_registry import ToolRegistry


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def echo_call(text: str = "tick") -> LLMResponse:
    return LLMResponse(tool_calls=[ToolCall(id="c1", name="echo", arguments={"text": text})])


class GatedThinker:
    """
    Calls echo on every THINK. From the `gate_at`-th call on, waits for
    `gate` before answering, so a test can act while THINK is in flight.
    """

    def __init__(self, gate_at: int = 10**6, final: LLMResponse | None = None, finish_at: int = 10**6):
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.gate_at = gate_at
        self.finish_at = finish_at
        self.final = final or LLMResponse(content="all done")
        self.calls = 0

    async def think(self, history, system_prompt, capabilities):
        self.calls += 1
        if self.calls >= self.gate_at:
            self.entered.set()
            await self.gate.wait()
        if self.calls >= self.finish_at:
            return self.final
        return echo_call(f"tick {self.calls}")


def make_executor(thinker, max_steps: int = 10) -> AgentExecutor:
    tools = ToolRegistry()

    @tools.register(
        name="echo",
        description="Echo text back",
        parameters={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    )
    async def echo(text: str) -> str:
        return text

    register_builtin_tools(tools)
    tools.freeze()
    return AgentExecutor(
        "tester",
        SessionContext("s1", InMemorySessionStore()),
        thinker,
        ToolBusActor(ToolBus(tools)),
        max_steps=max_steps,
        breaker=CircuitBreaker(3),
        step_delay=0.0,
    )


async def collect(channel: PushChannel) -> list:
    return [event async for event in channel]


# ─────────────────────────────────────────────────────────────────────────────
# Blocking
# ─────────────────────────────────────────────────────────────────────────────


class TestBlockingDriver:
    @pytest.mark.asyncio
    async def test_returns_joined_text(self):
        executor = make_executor(GatedThinker(finish_at=3))
        result = await BlockingDriver().run(executor, "go")

        assert result.splitlines() == [
            "Tool 'echo' returned: tick 1",
            "Tool 'echo' returned: tick 2",
            "all done",
        ]
        assert executor.state is ExecutionState.FINISHED

    @pytest.mark.asyncio
    async def test_validation_error_propagates(self):
        executor = make_executor(GatedThinker())
        with pytest.raises(ValidationError):
            await BlockingDriver().run(executor, "")
        assert executor.state is ExecutionState.IDLE

    @pytest.mark.asyncio
    async def test_loop_error_becomes_text(self):
        executor = make_executor(GatedThinker())

        async def broken_step():
            raise RuntimeError("wiring fault")

        executor.step = broken_step
        result = await BlockingDriver().run(executor, "go")

        assert result == "Execution error: wiring fault"
        assert executor.state is ExecutionState.ERROR


# ─────────────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────────────


class TestStreamingDriver:
    @pytest.mark.asyncio
    async def test_start_steps_done(self):
        executor = make_executor(GatedThinker(finish_at=2))
        channel = PushChannel("s1")
        task = StreamingDriver().start(executor, "go", channel)

        events = await asyncio.wait_for(collect(channel), timeout=2.0)
        await task

        assert [e.type for e in events] == ["start", "step", "step", "done"]
        assert events[0].text == "agent 'tester' started"
        assert events[1].text == "Tool 'echo' returned: tick 1"
        assert events[1].data["step"] == 1
        assert events[2].data["kind"] == "narration"
        assert events[3].text == "agent 'tester' execution complete"
        assert events[3].data["state"] == "FINISHED"
        assert channel.state is ChannelState.COMPLETED

    @pytest.mark.asyncio
    async def test_step_bound_streams_truncation_notice(self):
        executor = make_executor(GatedThinker(), max_steps=2)
        channel = PushChannel("s1")
        StreamingDriver().start(executor, "go", channel)

        events = await asyncio.wait_for(collect(channel), timeout=2.0)

        assert [e.data.get("kind") for e in events if e.type == "step"] == [
            "action",
            "action",
            "truncated",
        ]
        assert events[-2].text == "Terminated: reached max steps (2)"
        assert events[-1].data["state"] == "FINISHED"

    @pytest.mark.asyncio
    async def test_steps_pushed_as_they_complete(self):
        thinker = GatedThinker(gate_at=2, finish_at=2)
        executor = make_executor(thinker)
        channel = PushChannel("s1")
        task = StreamingDriver().start(executor, "go", channel)

        events = channel.events()
        assert (await events.__anext__()).type == "start"
        first_step = await asyncio.wait_for(events.__anext__(), timeout=1.0)
        # delivered while the second THINK is still blocked
        assert first_step.text == "Tool 'echo' returned: tick 1"
        assert not thinker.gate.is_set()

        thinker.gate.set()
        rest = [e async for e in events]
        await task
        assert [e.type for e in rest] == ["step", "done"]

    @pytest.mark.asyncio
    async def test_validation_rejected_before_anything_is_queued(self):
        executor = make_executor(GatedThinker())
        executor.begin("already running")
        channel = PushChannel("s1")

        with pytest.raises(ValidationError):
            StreamingDriver().start(executor, "second", channel)
        await channel.complete()
        assert await collect(channel) == []

    @pytest.mark.asyncio
    async def test_closed_channel_rejected(self):
        executor = make_executor(GatedThinker())
        channel = PushChannel("s1")
        await channel.complete()
        with pytest.raises(ValidationError):
            StreamingDriver().start(executor, "go", channel)
        assert executor.state is ExecutionState.IDLE

    @pytest.mark.asyncio
    async def test_loop_error_pushes_error_event(self):
        executor = make_executor(GatedThinker())

        async def broken_step():
            raise RuntimeError("wiring fault")

        executor.step = broken_step
        channel = PushChannel("s1")
        StreamingDriver().start(executor, "go", channel)

        events = await asyncio.wait_for(collect(channel), timeout=2.0)

        assert [e.type for e in events] == ["start", "error"]
        assert events[-1].text == "Execution error: wiring fault"
        assert channel.state is ChannelState.COMPLETED
        assert executor.state is ExecutionState.ERROR

    @pytest.mark.asyncio
    async def test_close_observed_between_iterations(self):
        thinker = GatedThinker(gate_at=2)
        executor = make_executor(thinker)
        channel = PushChannel("s1")
        task = StreamingDriver().start(executor, "go", channel)

        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)
        await channel.close("closed by caller")
        thinker.gate.set()
        await asyncio.wait_for(task, timeout=1.0)

        events = await collect(channel)
        assert [e.type for e in events] == ["start", "step", "close"]
        assert thinker.calls == 2
        assert executor.state is ExecutionState.FINISHED

    @pytest.mark.asyncio
    async def test_timeout_ends_run_with_error(self):
        thinker = GatedThinker(gate_at=1)
        executor = make_executor(thinker)
        channel = PushChannel("s1", timeout_seconds=0.05)
        channel.start()
        task = StreamingDriver().start(executor, "go", channel)

        assert await asyncio.wait_for(channel.wait_ended(), timeout=1.0) is ChannelState.TIMED_OUT
        thinker.gate.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert executor.state is ExecutionState.ERROR
        assert thinker.calls == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_tasks(self):
        thinker = GatedThinker(gate_at=1)
        executor = make_executor(thinker)
        channel = PushChannel("s1")
        driver = StreamingDriver()
        driver.start(executor, "go", channel)
        await asyncio.wait_for(thinker.entered.wait(), timeout=1.0)
        assert driver.active_tasks == 1

        await driver.shutdown(timeout=1.0)

        assert driver.active_tasks == 0
        assert executor.state is ExecutionState.ERROR
        await channel.complete()
