"""
reactloop/agent/executor.py — Agent Executor

One executor per live session. It owns the execution state, the step
counter, the circuit breaker and a SessionContext, and drives the
reason-then-act cycle:

    begin(prompt)            validate, IDLE → RUNNING, append the User message
    steps()                  async generator, one StepRecord per iteration
        ├─ breaker.check()   open → ERROR, run ends (no THINK)
        ├─ THINK             narration → FINISHED | invocations → ACT
        └─ ACT               dispatch in order; last result terminates?
    run(prompt)              begin() + drain steps() → joined text
    reset()                  back to IDLE; a suspended loop ends CANCELLED

Both drivers share steps(), so blocking and streaming runs behave
identically. Iterations within a session are strictly sequential; the
only suspension points are THINK, ACT and the inter-step delay.

Exceptions never escape steps(): THINK/ACT failures are recorded and
counted, anything else turns the run into ERROR with an "Execution error"
record. begin() is the one place that raises (ValidationError), always
before anything is mutated.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional

from reactloop.agent.breaker import CircuitBreaker
from reactloop.agent.context import SessionContext
from reactloop.agent.state import ExecutionState, check_transition
from reactloop.agent.strategies import ActStrategy, ThinkStrategy
from reactloop.brain.types import LLMResponse, Message, ToolCall, ToolResult
from reactloop.exceptions import (
    ActionError,
    CircuitOpenError,
    ReasoningError,
    ValidationError,
)
from reactloop.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_MAX_STEPS = 10


class StepKind(str, Enum):
    NARRATION = "narration"        # plain answer, run finished
    ACTION = "action"              # tools invoked successfully
    THINK_FAILED = "think_failed"  # gateway error, counted
    ACT_FAILED = "act_failed"      # a tool errored or ACT raised, counted
    HALTED = "halted"              # breaker open, state ERROR
    TRUNCATED = "truncated"        # step bound exhausted, forced FINISHED
    ERROR = "error"                # uncaught exception, state ERROR
    CANCELLED = "cancelled"        # superseded by reset(), nothing recorded


@dataclass
class StepRecord:
    """What one iteration (or the run's closing notice) produced."""
    step: int
    kind: StepKind
    text: str

    @property
    def is_failure(self) -> bool:
        return self.kind in (
            StepKind.THINK_FAILED,
            StepKind.ACT_FAILED,
            StepKind.HALTED,
            StepKind.ERROR,
            StepKind.CANCELLED,
        )


def join_records(records: list[StepRecord]) -> str:
    """
    Blocking-mode result text. An uncaught error or a cancellation replaces
    the whole result; otherwise every description is joined with newlines.
    """
    if records and records[-1].kind in (StepKind.ERROR, StepKind.CANCELLED):
        return records[-1].text
    return "\n".join(r.text for r in records)


class AgentExecutor:
    """
    Flat ReAct executor parameterised by prompts and THINK/ACT strategies.

    Args:
        name:             Agent name, used in logs and status.
        context:          Session-scoped message log.
        thinker:          THINK strategy (the attached model gateway). None
                          means no gateway; begin() will refuse to run.
        actor:            ACT strategy (capability dispatch).
        system_prompt:    Role prompt sent with every THINK.
        next_step_prompt: Appended as a User message before every THINK
                          when non-blank.
        max_steps:        Iteration bound per run.
        breaker:          Consecutive-failure breaker (default threshold 3).
        step_delay:       Seconds to wait between iterations.
    """

    def __init__(
        self,
        name: str,
        context: SessionContext,
        thinker: Optional[ThinkStrategy],
        actor: ActStrategy,
        *,
        system_prompt: str = "",
        next_step_prompt: str = "",
        max_steps: int = DEFAULT_MAX_STEPS,
        breaker: Optional[CircuitBreaker] = None,
        step_delay: float = 0.0,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.name = name
        self.context = context
        self.thinker = thinker
        self.actor = actor
        self.system_prompt = system_prompt
        self.next_step_prompt = next_step_prompt
        self.max_steps = max_steps
        self.breaker = breaker or CircuitBreaker()
        self.step_delay = step_delay

        self._state = ExecutionState.IDLE
        self.current_step = 0
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None
        self._log = log.bind(agent=name, session_id=context.session_id)

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def generation(self) -> int:
        """Bumped by every begin() and reset(); a loop only acts while its own is current."""
        return self._generation

    @property
    def consecutive_failures(self) -> int:
        return self.breaker.consecutive_failures

    def _transition(self, target: ExecutionState) -> None:
        check_transition(self._state, target)
        self._log.debug("executor.state", frm=self._state.value, to=target.value)
        self._state = target

    def _settle(self, target: ExecutionState) -> None:
        # An interrupt may already have ended the run while THINK/ACT was awaited.
        if self._state is ExecutionState.RUNNING:
            self._transition(target)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def validate(self, prompt: str) -> None:
        """Raise ValidationError if a run cannot start. Mutates nothing."""
        if self._state is not ExecutionState.IDLE:
            raise ValidationError(f"Cannot run agent from state {self._state.value}")
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt must not be blank")
        if self.thinker is None:
            raise ValidationError("No language model gateway attached")

    def begin(self, prompt: str) -> None:
        """
        Start a run: validate, IDLE → RUNNING, append the prompt as a User
        message. Synchronous, so two callers on one event loop can never both
        pass validation for the same executor.
        """
        try:
            self.validate(prompt)
        except ValidationError as e:
            self._log.warning("executor.rejected", reason=str(e))
            raise
        self._transition(ExecutionState.RUNNING)
        self._generation += 1
        self.current_step = 0
        self.breaker.reset()
        self.context.append(Message.user(prompt))
        self._log.info("executor.run_start", max_steps=self.max_steps)

    def interrupt(self, target: ExecutionState) -> bool:
        """
        End a running loop from outside (channel hooks). Observed by steps()
        at the next iteration boundary. Returns True if the state changed.
        """
        if self._state is not ExecutionState.RUNNING:
            return False
        self._transition(target)
        self._log.info("executor.interrupted", state=target.value, step=self.current_step)
        return True

    def reset(self) -> None:
        """
        Back to IDLE with zeroed counters. Idempotent. The session log is
        left alone; clear it explicitly with `await executor.context.clear()`.

        A loop still suspended in THINK or ACT belongs to the old generation:
        its pending call is cancelled and the loop ends with a CANCELLED
        record, so at most one loop ever talks to the gateway or writes to
        the session log.
        """
        if self._state is ExecutionState.RUNNING:
            self._log.warning("executor.reset_running", step=self.current_step)
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._generation += 1
        self._state = ExecutionState.IDLE
        self.current_step = 0
        self.breaker.reset()
        self._log.debug("executor.reset")

    def apply_overrides(
        self,
        system_prompt: Optional[str] = None,
        max_steps: Optional[int] = None,
    ) -> None:
        """Per-request overrides. Only while IDLE; max_steps only when positive."""
        if self._state is not ExecutionState.IDLE:
            raise ValidationError(f"Cannot reconfigure agent in state {self._state.value}")
        if system_prompt:
            self.system_prompt = system_prompt
        if max_steps is not None and max_steps > 0:
            self.max_steps = max_steps

    async def refresh(self) -> bool:
        """
        Re-read the session log from the store before a new run, so expiry
        and external clears take effect on a long-lived executor. Only while
        IDLE; if a run began during the read the result is dropped.
        Returns True if the log was replaced.
        """
        if self._state is not ExecutionState.IDLE:
            return False
        generation = self._generation
        messages = await self.context.fetch()
        if self._state is not ExecutionState.IDLE or generation != self._generation:
            return False
        self.context.replace(messages)
        return True

    # ── Loop ──────────────────────────────────────────────────────────────────

    def _is_live(self, generation: int) -> bool:
        return generation == self._generation and self._state is ExecutionState.RUNNING

    def _cancelled(self, n: int) -> StepRecord:
        self._log.info("executor.cancelled", step=n)
        return StepRecord(n, StepKind.CANCELLED, "Run cancelled: agent was reset")

    async def steps(self) -> AsyncIterator[StepRecord]:
        """
        Run the loop started by begin(), yielding each iteration's record as
        soon as it completes. Ends when the state leaves RUNNING or the step
        bound is reached; the latter forces FINISHED and yields a
        truncation notice. A reset() while suspended ends the loop with a
        CANCELLED record and leaves the executor untouched.
        """
        if self._state is not ExecutionState.RUNNING:
            raise ValidationError("steps() requires a run started with begin()")
        generation = self._generation

        try:
            while self.current_step < self.max_steps and self._is_live(generation):
                if self.current_step > 0 and self.step_delay > 0:
                    await asyncio.sleep(self.step_delay)
                    if generation != self._generation:
                        yield self._cancelled(self.current_step)
                        return
                    if self._state is not ExecutionState.RUNNING:
                        break

                try:
                    self.breaker.check()
                except CircuitOpenError as e:
                    self._transition(ExecutionState.ERROR)
                    self._log.warning(
                        "executor.halted",
                        step=self.current_step,
                        failures=e.failures,
                    )
                    yield StepRecord(self.current_step, StepKind.HALTED, str(e))
                    return

                self.current_step += 1
                self._log.info("executor.step_start", step=self.current_step, max_steps=self.max_steps)
                try:
                    record = await self.step()
                except asyncio.CancelledError:
                    # reset() cancelled our THINK or ACT; anything else propagates
                    if generation == self._generation:
                        raise
                    record = self._cancelled(self.current_step)
                yield record
                if record.kind is StepKind.CANCELLED:
                    return

            if generation != self._generation:
                yield self._cancelled(self.current_step)
            elif self._is_live(generation):
                self._transition(ExecutionState.FINISHED)
                notice = f"Terminated: reached max steps ({self.max_steps})"
                self._log.warning("executor.max_steps", max_steps=self.max_steps)
                yield StepRecord(self.current_step, StepKind.TRUNCATED, notice)

        except Exception as e:
            if self._is_live(generation):
                self._transition(ExecutionState.ERROR)
            self._log.error("executor.run_error", error=str(e), exc_info=True)
            yield StepRecord(self.current_step, StepKind.ERROR, f"Execution error: {e}")

        finally:
            self._log.info(
                "executor.run_end",
                state=self._state.value,
                steps=self.current_step,
                failures=self.breaker.consecutive_failures,
                superseded=generation != self._generation,
            )

    async def run(self, prompt: str) -> str:
        """Blocking run: begin(), drain steps(), return the joined text."""
        self.begin(prompt)
        records = [record async for record in self.steps()]
        return join_records(records)

    # ── One iteration ─────────────────────────────────────────────────────────

    async def step(self) -> StepRecord:
        """THINK, then ACT if the decision requested invocations."""
        n = self.current_step
        generation = self._generation

        try:
            decision = await self._think()
        except ReasoningError as e:
            if generation != self._generation:
                return self._cancelled(n)
            self.context.append(Message.assistant(f"Thinking failed: {e}", kind="think_error"))
            self.breaker.record_failure()
            self._log.error("executor.think_failed", step=n, error=str(e))
            return StepRecord(n, StepKind.THINK_FAILED, f"Thinking failed: {e}")

        if generation != self._generation:
            return self._cancelled(n)

        if not decision.has_tool_calls:
            text = decision.content or ""
            self.context.append(Message.assistant(text))
            self._settle(ExecutionState.FINISHED)
            self._log.info("executor.narration", step=n, chars=len(text))
            return StepRecord(n, StepKind.NARRATION, text)

        self.context.append(Message.assistant(decision.content, tool_calls=decision.tool_calls))
        self._log.info(
            "executor.think_done",
            step=n,
            tools=[tc.name for tc in decision.tool_calls],
        )

        try:
            results = await self._act(decision.tool_calls)
        except ActionError as e:
            if generation != self._generation:
                return self._cancelled(n)
            self.breaker.record_failure()
            self._log.error("executor.act_failed", step=n, error=str(e))
            return StepRecord(n, StepKind.ACT_FAILED, f"Action failed: {e}")

        if generation != self._generation:
            return self._cancelled(n)

        for result in results:
            self.context.append(Message.tool_response(result))

        text = "\n".join(r.describe() for r in results)
        if any(r.is_error for r in results):
            self.breaker.record_failure()
            self._log.warning(
                "executor.tool_errors",
                step=n,
                failed=[r.name for r in results if r.is_error],
                consecutive_failures=self.breaker.consecutive_failures,
            )
            kind = StepKind.ACT_FAILED
        else:
            self.breaker.record_success()
            kind = StepKind.ACTION

        last = results[-1]
        if last.is_terminate and not last.is_error:
            self._settle(ExecutionState.FINISHED)
            self._log.info("executor.terminated", step=n, tool=last.name)

        return StepRecord(n, kind, text)

    async def _think(self) -> LLMResponse:
        if self.next_step_prompt and self.next_step_prompt.strip():
            self.context.append(Message.user(self.next_step_prompt))
        try:
            return await self._track(
                self.thinker.think(
                    self.context.messages,
                    self.system_prompt,
                    self.actor.capabilities(),
                )
            )
        except Exception as e:
            raise ReasoningError(str(e) or type(e).__name__) from e

    async def _act(self, tool_calls: list[ToolCall]) -> list[ToolResult]:
        try:
            results = await self._track(self.actor.act(tool_calls))
        except Exception as e:
            raise ActionError(str(e) or type(e).__name__) from e
        if not results:
            raise ActionError("no tool response received")
        return results

    async def _track(self, awaitable):
        # the pending THINK or ACT, so reset() can cancel it
        task = asyncio.ensure_future(awaitable)
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    # ── Introspection ─────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """Point-in-time snapshot for status queries."""
        return {
            "session_id": self.session_id,
            "agent_name": self.name,
            "agent_state": self._state.value,
            "current_step": self.current_step,
            "max_steps": self.max_steps,
            "available_tools": self.actor.tool_count,
            "consecutive_failures": self.breaker.consecutive_failures,
            "message_count": len(self.context),
        }

    def __repr__(self) -> str:
        return (
            f"<AgentExecutor {self.name} session={self.session_id} "
            f"state={self._state.value} step={self.current_step}/{self.max_steps}>"
        )
