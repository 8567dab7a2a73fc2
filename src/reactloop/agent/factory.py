"""
reactloop/agent/factory.py — Agent Factory

Builds one AgentExecutor per session id, wiring the shared THINK/ACT
strategies, a fresh circuit breaker and a SessionContext seeded from the
session store. The strategies hold no per-session state, so every executor
shares the same thinker and actor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from reactloop.agent.breaker import CircuitBreaker
from reactloop.agent.context import SessionContext
from reactloop.agent.executor import DEFAULT_MAX_STEPS, AgentExecutor
from reactloop.agent.strategies import ActStrategy, LLMThinker, ThinkStrategy, ToolBusActor
from reactloop.brain.llm_client import BaseLLMClient
from reactloop.brain.types import LLMConfig
from reactloop.memory.session_store import SessionStore
from reactloop.observability.logger import get_logger
from reactloop.tools.tool_bus import ToolBus

log = get_logger(__name__)


@dataclass
class AgentProfile:
    """Identity and limits every executor from one factory starts with."""
    name: str = "reactloop"
    system_prompt: str = ""
    next_step_prompt: str = ""
    max_steps: int = DEFAULT_MAX_STEPS
    step_delay: float = 0.1
    failure_threshold: int = 3

    @classmethod
    def from_settings(cls, settings) -> "AgentProfile":
        return cls(
            name=settings.agent.name,
            system_prompt=settings.agent.system_prompt,
            next_step_prompt=settings.agent.next_step_prompt,
            max_steps=settings.agent.max_steps,
            step_delay=settings.agent.step_delay_seconds,
            failure_threshold=settings.breaker.max_consecutive_failures,
        )


class AgentFactory:

    def __init__(
        self,
        profile: AgentProfile,
        thinker: Optional[ThinkStrategy],
        actor: ActStrategy,
        store: SessionStore,
    ):
        self.profile = profile
        self.thinker = thinker
        self.actor = actor
        self.store = store

    @classmethod
    def from_settings(
        cls,
        settings,
        llm: Optional[BaseLLMClient],
        bus: ToolBus,
        store: SessionStore,
    ) -> "AgentFactory":
        thinker = None
        if llm is not None:
            thinker = LLMThinker(
                llm,
                LLMConfig(
                    model=settings.llm.model,
                    temperature=settings.llm.temperature,
                    max_tokens=settings.llm.max_tokens,
                    timeout_seconds=settings.llm.timeout_seconds,
                ),
            )
        return cls(AgentProfile.from_settings(settings), thinker, ToolBusActor(bus), store)

    async def create(self, session_id: str) -> AgentExecutor:
        context = await SessionContext.load(session_id, self.store)
        executor = AgentExecutor(
            self.profile.name,
            context,
            self.thinker,
            self.actor,
            system_prompt=self.profile.system_prompt,
            next_step_prompt=self.profile.next_step_prompt,
            max_steps=self.profile.max_steps,
            breaker=CircuitBreaker(self.profile.failure_threshold),
            step_delay=self.profile.step_delay,
        )
        log.debug(
            "agent_factory.created",
            session_id=session_id,
            agent=self.profile.name,
            history=len(context),
            tools=self.actor.tool_count,
        )
        return executor
