"""
reactloop/gateway/channel.py — Push Channel

One-way, session-bound delivery path from a background run to its consumer.

    OPEN ──complete()/close()──▶ COMPLETED
      │──watchdog timeout──────▶ TIMED_OUT
      └──fail(exc)─────────────▶ ERRORED

  - send() pushes onto a bounded asyncio.Queue; a full queue applies
    backpressure to the producer until the consumer catches up or the
    channel ends
  - close() queues a close notice that the consumer receives after every
    already-queued event, then completes; calling it again is a no-op
  - each terminal transition runs its hooks exactly once; the service
    uses them to evict registry entries even while the producing loop is
    still between iterations

ChannelRegistry maps session_id → open channel, guarded by asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from reactloop.exceptions import ChannelError
from reactloop.gateway.protocol import StreamEvent, make_close
from reactloop.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_QUEUE_SIZE = 64

ChannelHook = Callable[["PushChannel"], Any]


class ChannelState(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


class PushChannel:
    """
    Args:
        session_id:      Session this channel delivers for.
        timeout_seconds: Lifetime before the watchdog times the channel out.
        queue_size:      Max undelivered events before send() waits.
    """

    def __init__(
        self,
        session_id: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        self.created_at = time.time()
        self.error: Optional[BaseException] = None

        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=queue_size)
        self._state = ChannelState.OPEN
        self._ended = asyncio.Event()
        self._final: Optional[StreamEvent] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._hooks: dict[ChannelState, list[ChannelHook]] = {
            ChannelState.COMPLETED: [],
            ChannelState.TIMED_OUT: [],
            ChannelState.ERRORED: [],
        }

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    # ── Hooks ─────────────────────────────────────────────────────────────────

    def on_complete(self, hook: ChannelHook) -> None:
        self._hooks[ChannelState.COMPLETED].append(hook)

    def on_timeout(self, hook: ChannelHook) -> None:
        self._hooks[ChannelState.TIMED_OUT].append(hook)

    def on_error(self, hook: ChannelHook) -> None:
        self._hooks[ChannelState.ERRORED].append(hook)

    def on_end(self, hook: ChannelHook) -> None:
        """Register hook for every terminal transition."""
        for hooks in self._hooks.values():
            hooks.append(hook)

    # ── Producer side ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Arm the timeout watchdog. Must be called from a running event loop."""
        if self._watchdog is None and self.is_open:
            self._watchdog = asyncio.create_task(
                self._expire(), name=f"channel-timeout-{self.session_id}"
            )

    async def send(self, event: StreamEvent) -> None:
        """
        Queue an event for the consumer.

        Raises:
            ChannelError: the channel is not open, or ended while waiting
                          for queue space.
        """
        if not self.is_open:
            raise ChannelError(f"Channel for session '{self.session_id}' is {self._state.value}")
        try:
            self._queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._queue.put(event))
        ended = asyncio.ensure_future(self._ended.wait())
        done, pending = await asyncio.wait({put, ended}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if put not in done:
            raise ChannelError(
                f"Channel for session '{self.session_id}' ended while waiting to send"
            )

    async def complete(self) -> bool:
        """Normal end of delivery. Returns False if already ended."""
        return await self._finish(ChannelState.COMPLETED)

    async def close(self, reason: str = "closed by caller") -> bool:
        """
        Send a close notice, then complete. Idempotent: returns False and
        sends nothing if the channel had already ended.
        """
        if not self.is_open:
            return False
        self._final = make_close(self.session_id, reason)
        return await self._finish(ChannelState.COMPLETED)

    async def fail(self, exc: BaseException) -> bool:
        """Transport/consumer failure. Returns False if already ended."""
        if not self.is_open:
            return False
        self.error = exc
        return await self._finish(ChannelState.ERRORED)

    async def wait_ended(self) -> ChannelState:
        await self._ended.wait()
        return self._state

    # ── Consumer side ─────────────────────────────────────────────────────────

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Yield events in send order until the channel ends and the queue is
        drained; a close notice, if any, comes last.
        """
        while True:
            if not self._queue.empty():
                yield self._queue.get_nowait()
                continue
            if not self.is_open:
                break
            getter = asyncio.ensure_future(self._queue.get())
            ended = asyncio.ensure_future(self._ended.wait())
            done, pending = await asyncio.wait(
                {getter, ended}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            if getter in done:
                yield getter.result()

        if self._final is not None:
            final, self._final = self._final, None
            yield final

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout_seconds)
        if self.is_open:
            log.warning(
                "channel.timed_out",
                session_id=self.session_id,
                timeout_seconds=self.timeout_seconds,
            )
            await self._finish(ChannelState.TIMED_OUT)

    async def _finish(self, state: ChannelState) -> bool:
        if not self.is_open:
            return False
        self._state = state
        self._ended.set()

        if self._watchdog is not None and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()

        log.info(
            "channel.ended",
            session_id=self.session_id,
            state=state.value,
            pending=self._queue.qsize(),
            error=str(self.error) if self.error else None,
        )

        for hook in self._hooks[state]:
            try:
                result = hook(self)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(
                    "channel.hook_error",
                    session_id=self.session_id,
                    state=state.value,
                    error=str(e),
                    exc_info=True,
                )
        return True

    def __repr__(self) -> str:
        return f"<PushChannel session={self.session_id} state={self._state.value}>"


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

class ChannelRegistry:
    """
    Async-safe map of session_id → PushChannel.
    Entries are inserted when a stream starts and removed by channel hooks.
    """

    def __init__(self):
        self._channels: dict[str, PushChannel] = {}
        self._lock = asyncio.Lock()

    async def add(self, channel: PushChannel) -> Optional[PushChannel]:
        """Register channel. Returns the channel it replaced, if any."""
        async with self._lock:
            previous = self._channels.get(channel.session_id)
            self._channels[channel.session_id] = channel
        log.debug("channel_registry.added", session_id=channel.session_id)
        return previous

    async def get(self, session_id: str) -> Optional[PushChannel]:
        async with self._lock:
            return self._channels.get(session_id)

    async def remove(self, session_id: str, channel: Optional[PushChannel] = None) -> bool:
        """
        Remove the entry for session_id. If channel is given, only remove it
        when it is still the registered one (a newer stream may have replaced it).
        """
        async with self._lock:
            current = self._channels.get(session_id)
            if current is None or (channel is not None and current is not channel):
                return False
            del self._channels[session_id]
        log.debug("channel_registry.removed", session_id=session_id)
        return True

    async def is_active(self, session_id: str) -> bool:
        async with self._lock:
            channel = self._channels.get(session_id)
            return channel is not None and channel.is_open

    async def list_sessions(self) -> list[str]:
        async with self._lock:
            return list(self._channels.keys())

    async def get_count(self) -> int:
        async with self._lock:
            return len(self._channels)

    @property
    def count(self) -> int:
        """Lock-free count for synchronous callers such as tests."""
        return len(self._channels)
