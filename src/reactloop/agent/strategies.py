"""
reactloop/agent/strategies.py — THINK and ACT strategies

The executor is a single flat type; what it reasons with and how it acts
are injected. Anything matching these protocols can be plugged in, which is
also how the tests drive the loop with scripted decisions.

    ThinkStrategy   history + system prompt + capabilities → LLMResponse
    ActStrategy     requested ToolCalls → ToolResults, in request order
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from reactloop.brain.llm_client import BaseLLMClient
from reactloop.brain.types import LLMConfig, LLMResponse, Message, ToolCall, ToolResult, ToolSchema
from reactloop.tools.tool_bus import ToolBus


@runtime_checkable
class ThinkStrategy(Protocol):
    async def think(
        self,
        history: list[Message],
        system_prompt: str,
        capabilities: list[ToolSchema],
    ) -> LLMResponse:
        ...


@runtime_checkable
class ActStrategy(Protocol):
    @property
    def tool_count(self) -> int:
        ...

    def capabilities(self) -> list[ToolSchema]:
        ...

    async def act(self, tool_calls: list[ToolCall]) -> list[ToolResult]:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# Default implementations
# ─────────────────────────────────────────────────────────────────────────────


class LLMThinker:
    """THINK through the blocking gateway call. Never uses streaming."""

    def __init__(self, llm: BaseLLMClient, config: LLMConfig):
        self.llm = llm
        self.config = config

    async def think(
        self,
        history: list[Message],
        system_prompt: str,
        capabilities: list[ToolSchema],
    ) -> LLMResponse:
        messages = list(history)
        if system_prompt:
            messages.insert(0, Message.system(system_prompt))
        return await self.llm.generate(messages, self.config, tools=capabilities or None)


class ToolBusActor:
    """ACT by dispatching each call through the ToolBus, strictly in order."""

    def __init__(self, bus: ToolBus):
        self.bus = bus

    @property
    def tool_count(self) -> int:
        return self.bus.tool_count

    def capabilities(self) -> list[ToolSchema]:
        return self.bus.registry.to_llm_schemas()

    async def act(self, tool_calls: list[ToolCall]) -> list[ToolResult]:
        results: list[ToolResult] = []
        for call in tool_calls:
            results.append(await self.bus.dispatch(call))
        return results
