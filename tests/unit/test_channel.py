"""
tests/unit/test_channel.py — Push Channel Tests

Covers:
  - events are delivered in send order
  - close() delivers the close notice after queued events, exactly once
  - the watchdog times an idle channel out and runs its hooks
  - hooks run once per channel, hook errors never escape
  - bounded queue applies backpressure; a blocked send fails when the channel ends
  - ChannelRegistry identity-guarded removal
"""

from __future__ import annotations

import asyncio

import pytest

from reactloop.exceptions import ChannelError
from reactloop.gateway.channel import ChannelRegistry, ChannelState, PushChannel
from reactloop.gateway.protocol import EventType, make_step


def step(n: int, sid: str = "s1"):
    return make_step(sid, n, "action", f"step {n}")


async def drain(channel: PushChannel) -> list:
    return [event async for event in channel]


# ─────────────────────────────────────────────────────────────────────────────
# Delivery
# ─────────────────────────────────────────────────────────────────────────────


class TestDelivery:
    @pytest.mark.asyncio
    async def test_events_in_send_order(self):
        channel = PushChannel("s1")
        for n in range(3):
            await channel.send(step(n))
        await channel.complete()

        events = await drain(channel)
        assert [e.text for e in events] == ["step 0", "step 1", "step 2"]
        assert channel.state is ChannelState.COMPLETED

    @pytest.mark.asyncio
    async def test_consumer_waits_for_later_events(self):
        channel = PushChannel("s1")
        consumer = asyncio.create_task(drain(channel))
        await asyncio.sleep(0.01)

        await channel.send(step(1))
        await asyncio.sleep(0.01)
        await channel.send(step(2))
        await channel.complete()

        events = await asyncio.wait_for(consumer, timeout=1.0)
        assert [e.data["step"] for e in events] == [1, 2]

    @pytest.mark.asyncio
    async def test_send_after_end_raises(self):
        channel = PushChannel("s1")
        await channel.complete()
        with pytest.raises(ChannelError, match="completed"):
            await channel.send(step(1))

    @pytest.mark.asyncio
    async def test_complete_is_idempotent(self):
        channel = PushChannel("s1")
        assert await channel.complete() is True
        assert await channel.complete() is False


# ─────────────────────────────────────────────────────────────────────────────
# Close
# ─────────────────────────────────────────────────────────────────────────────


class TestClose:
    @pytest.mark.asyncio
    async def test_close_notice_comes_after_queued_events(self):
        channel = PushChannel("s1")
        await channel.send(step(1))
        await channel.send(step(2))

        assert await channel.close("closed by caller") is True
        events = await drain(channel)

        assert [e.type for e in events] == ["step", "step", EventType.CLOSE.value]
        assert events[-1].text == "stream closed: closed by caller"
        assert channel.state is ChannelState.COMPLETED

    @pytest.mark.asyncio
    async def test_second_close_sends_nothing(self):
        channel = PushChannel("s1")
        assert await channel.close() is True
        assert await channel.close() is False

        events = await drain(channel)
        assert [e.type for e in events] == ["close"]

    @pytest.mark.asyncio
    async def test_close_after_complete_is_noop(self):
        channel = PushChannel("s1")
        await channel.complete()
        assert await channel.close() is False
        assert await drain(channel) == []


# ─────────────────────────────────────────────────────────────────────────────
# Hooks and timeout
# ─────────────────────────────────────────────────────────────────────────────


class TestHooks:
    @pytest.mark.asyncio
    async def test_watchdog_times_out(self):
        fired = []
        channel = PushChannel("s1", timeout_seconds=0.05)
        channel.on_timeout(lambda ch: fired.append(ch.state))
        channel.start()

        state = await asyncio.wait_for(channel.wait_ended(), timeout=1.0)

        assert state is ChannelState.TIMED_OUT
        assert fired == [ChannelState.TIMED_OUT]

    @pytest.mark.asyncio
    async def test_complete_cancels_watchdog(self):
        fired = []
        channel = PushChannel("s1", timeout_seconds=0.05)
        channel.on_timeout(lambda ch: fired.append("timeout"))
        channel.start()
        await channel.complete()
        await asyncio.sleep(0.1)
        assert fired == []
        assert channel.state is ChannelState.COMPLETED

    @pytest.mark.asyncio
    async def test_on_end_runs_once_for_any_terminal_state(self):
        calls = []

        async def hook(ch):
            calls.append(ch.state)

        channel = PushChannel("s1")
        channel.on_end(hook)
        await channel.fail(ConnectionResetError("peer gone"))
        await channel.complete()
        await channel.close()

        assert calls == [ChannelState.ERRORED]
        assert isinstance(channel.error, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_hooks_are_state_specific(self):
        seen = []
        channel = PushChannel("s1")
        channel.on_complete(lambda ch: seen.append("complete"))
        channel.on_error(lambda ch: seen.append("error"))
        await channel.complete()
        assert seen == ["complete"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_stop_others(self):
        seen = []

        def broken(ch):
            raise RuntimeError("hook bug")

        channel = PushChannel("s1")
        channel.on_end(broken)
        channel.on_end(lambda ch: seen.append("second"))
        assert await channel.complete() is True
        assert seen == ["second"]


# ─────────────────────────────────────────────────────────────────────────────
# Backpressure
# ─────────────────────────────────────────────────────────────────────────────


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_full_queue_blocks_until_consumed(self):
        channel = PushChannel("s1", queue_size=1)
        await channel.send(step(1))

        blocked = asyncio.create_task(channel.send(step(2)))
        await asyncio.sleep(0.02)
        assert not blocked.done()

        events = channel.events()
        first = await events.__anext__()
        await asyncio.wait_for(blocked, timeout=1.0)
        second = await events.__anext__()

        assert (first.text, second.text) == ("step 1", "step 2")
        await channel.complete()
        await events.aclose()

    @pytest.mark.asyncio
    async def test_blocked_send_fails_when_channel_ends(self):
        channel = PushChannel("s1", queue_size=1)
        await channel.send(step(1))
        blocked = asyncio.create_task(channel.send(step(2)))
        await asyncio.sleep(0.01)

        await channel.close("consumer left")

        with pytest.raises(ChannelError, match="ended while waiting"):
            await asyncio.wait_for(blocked, timeout=1.0)


# ─────────────────────────────────────────────────────────────────────────────
# ChannelRegistry
# ─────────────────────────────────────────────────────────────────────────────


class TestChannelRegistry:
    @pytest.mark.asyncio
    async def test_add_get_remove(self):
        registry = ChannelRegistry()
        channel = PushChannel("s1")
        assert await registry.add(channel) is None
        assert await registry.get("s1") is channel
        assert await registry.is_active("s1")

        assert await registry.remove("s1") is True
        assert await registry.remove("s1") is False
        assert registry.count == 0

    @pytest.mark.asyncio
    async def test_remove_ignores_replaced_channel(self):
        registry = ChannelRegistry()
        old, new = PushChannel("s1"), PushChannel("s1")
        await registry.add(old)
        assert await registry.add(new) is old

        assert await registry.remove("s1", old) is False
        assert await registry.get("s1") is new
        assert await registry.remove("s1", new) is True

    @pytest.mark.asyncio
    async def test_ended_channel_is_not_active(self):
        registry = ChannelRegistry()
        channel = PushChannel("s1")
        await registry.add(channel)
        await channel.complete()
        assert not await registry.is_active("s1")
        assert await registry.get_count() == 1
        assert await registry.list_sessions() == ["s1"]
