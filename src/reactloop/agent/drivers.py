"""
reactloop/agent/drivers.py — Blocking and Streaming Drivers

Two ways to run the same executor loop:

  BlockingDriver   await the whole run, get the joined text back
  StreamingDriver  run on a background task, push each iteration's record
                   onto a PushChannel as soon as it completes

Validation is the only failure that escapes either driver. Everything else
becomes text (blocking) or an error event (streaming).
"""

from __future__ import annotations

import asyncio
from typing import Optional

from reactloop.agent.executor import AgentExecutor, StepKind, join_records
from reactloop.agent.state import ExecutionState
from reactloop.exceptions import ChannelError, ValidationError
from reactloop.gateway.channel import ChannelState, PushChannel
from reactloop.gateway.protocol import make_done, make_error, make_start, make_step
from reactloop.observability.logger import get_logger, session_context

log = get_logger(__name__)


class BlockingDriver:

    async def run(self, executor: AgentExecutor, prompt: str) -> str:
        """
        Run to a terminal state and return the joined step descriptions.

        Raises:
            ValidationError: the run could not start (nothing was mutated).
        """
        executor.begin(prompt)
        with session_context(executor.session_id, executor.name):
            try:
                records = [record async for record in executor.steps()]
            except Exception as e:
                # steps() converts its own failures; this guards the driver itself
                log.error("driver.blocking_error", session_id=executor.session_id, error=str(e), exc_info=True)
                return f"Execution error: {e}"
        return join_records(records)


class StreamingDriver:
    """
    Starts the loop on its own task bound to a PushChannel.

    Usage:
        task = driver.start(executor, prompt, channel)
        async for event in channel:
            ...
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def start(self, executor: AgentExecutor, prompt: str, channel: PushChannel) -> asyncio.Task:
        """
        Validate and begin synchronously, then hand the loop to a background
        task. Raises ValidationError before anything is queued or mutated.
        """
        if not channel.is_open:
            raise ValidationError(f"Channel for session '{channel.session_id}' is not open")
        executor.begin(prompt)
        # the task copies the current context, ids included
        with session_context(executor.session_id, executor.name):
            task = asyncio.create_task(
                self._pump(executor, channel, executor.generation),
                name=f"stream-{executor.session_id}",
            )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    @staticmethod
    def _interrupt(executor: AgentExecutor, generation: int, target: ExecutionState) -> None:
        # after a reset() the executor may already be running someone else's prompt
        if executor.generation == generation:
            executor.interrupt(target)

    async def _pump(self, executor: AgentExecutor, channel: PushChannel, generation: int) -> None:
        sid = executor.session_id
        steps = executor.steps()
        try:
            await channel.send(make_start(sid, executor.name))

            async for record in steps:
                if not channel.is_open:
                    break
                if record.kind in (StepKind.ERROR, StepKind.CANCELLED):
                    await channel.send(make_error(sid, record.text))
                    await channel.complete()
                    return
                await channel.send(make_step(sid, record.step, record.kind.value, record.text))
                # close is advisory, observed between iterations
                if not channel.is_open:
                    break

            if channel.is_open:
                await channel.send(make_done(sid, executor.name, executor.state.value))
                await channel.complete()
            else:
                # ended from outside: completion counts as FINISHED, timeout or error as ERROR
                self._interrupt(
                    executor,
                    generation,
                    ExecutionState.FINISHED
                    if channel.state is ChannelState.COMPLETED
                    else ExecutionState.ERROR,
                )
                log.info("driver.stream_abandoned", session_id=sid, channel_state=channel.state.value)

        except asyncio.CancelledError:
            self._interrupt(executor, generation, ExecutionState.ERROR)
            raise

        except ChannelError as e:
            log.warning("driver.channel_error", session_id=sid, error=str(e))
            self._interrupt(executor, generation, ExecutionState.ERROR)
            await channel.fail(e)

        except Exception as e:
            self._interrupt(executor, generation, ExecutionState.ERROR)
            log.error("driver.stream_error", session_id=sid, error=str(e), exc_info=True)
            if channel.is_open:
                await channel.send(make_error(sid, f"Execution error: {e}"))
                await channel.complete()

        finally:
            await steps.aclose()

    async def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel outstanding stream tasks (process shutdown)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
