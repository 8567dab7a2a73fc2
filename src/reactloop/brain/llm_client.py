"""
reactloop/brain/llm_client.py — Language model gateway contract

A gateway does two things for the engine:
  - generate(): the blocking decision call behind every THINK
  - stream():   text deltas for plain conversation; the THINK decision
                itself is never streamed

ResilientLLMClient puts exponential backoff in front of any gateway.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from reactloop.brain.types import LLMConfig, LLMResponse, Message, ToolSchema
from reactloop.exceptions import LLMConnectionError, LLMRateLimitError
from reactloop.observability.logger import get_logger

log = get_logger(__name__)

# Worth another attempt. Everything else in the LLMError family is final.
TRANSIENT_ERRORS = (LLMConnectionError, LLMRateLimitError)


class BaseLLMClient(ABC):

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> LLMResponse:
        """One decision: text, tool calls, or both."""

    @abstractmethod
    def stream(self, messages: list[Message], config: LLMConfig) -> AsyncIterator[str]:
        """Text deltas in the order the provider produces them."""

    @abstractmethod
    async def health_check(self) -> bool:
        """False when the provider can't be reached or rejects the key."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} base_url={self.base_url!r}>"


def backoff_delay(attempt: int, error: Exception, base_delay: float, max_delay: float) -> float:
    """
    Seconds to wait before retry number `attempt + 1`.

    A rate limit that names its own retry_after wins; otherwise
    base_delay * 2^attempt plus up to half a second of jitter. Capped at max_delay.
    """
    hinted = getattr(error, "retry_after", None)
    if hinted:
        return min(hinted, max_delay)
    return min(base_delay * 2 ** attempt + random.uniform(0, 0.5), max_delay)


class ResilientLLMClient(BaseLLMClient):
    """
    Retries generate() on transient failures; the last one propagates once
    max_attempts is used up. stream() goes straight to the wrapped client,
    since a half-delivered reply can't be replayed.

        client = ResilientLLMClient(OpenAIClient(api_key=...), max_attempts=3)
    """

    def __init__(
        self,
        primary: BaseLLMClient,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        super().__init__(api_key=primary.api_key, base_url=primary.base_url)
        self._primary = primary
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay

    @property
    def primary(self) -> BaseLLMClient:
        return self._primary

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> LLMResponse:
        attempt = 0
        while True:
            try:
                return await self._primary.generate(messages, config, tools)
            except TRANSIENT_ERRORS as e:
                attempt += 1
                if attempt >= self._max_attempts:
                    log.error("llm.retries_exhausted", attempts=attempt, error=str(e))
                    raise
                delay = backoff_delay(attempt - 1, e, self._base_delay, self._max_delay)
                log.warning(
                    "llm.retrying",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay_s=round(delay, 2),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    def stream(self, messages: list[Message], config: LLMConfig) -> AsyncIterator[str]:
        return self._primary.stream(messages, config)

    async def health_check(self) -> bool:
        return await self._primary.health_check()

    def __repr__(self) -> str:
        return f"<ResilientLLMClient primary={self._primary!r} attempts={self._max_attempts}>"
