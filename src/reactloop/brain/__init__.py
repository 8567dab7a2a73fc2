"""
brain/ — reactloop language model gateway

    client = LLMClientFactory.from_settings(settings)   # retrying OpenAI client
    response = await client.generate(messages, LLMConfig(model="gpt-4o"), tools)
"""

from __future__ import annotations

from typing import Callable, Optional

from reactloop.brain.llm_client import BaseLLMClient, ResilientLLMClient
from reactloop.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolResult,
    ToolSchema,
)
from reactloop.exceptions import LLMConnectionError

__all__ = [
    "BaseLLMClient",
    "FinishReason",
    "LLMClientFactory",
    "LLMConfig",
    "LLMResponse",
    "Message",
    "ResilientLLMClient",
    "Role",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    "ToolSchema",
]


def _openai(api_key: Optional[str], base_url: Optional[str], **kwargs) -> BaseLLMClient:
    if not api_key:
        raise LLMConnectionError("OPENAI_API_KEY is required", provider="openai")
    # imported here so the SDK loads only when the provider is actually used
    from reactloop.brain.openai_client import OpenAIClient

    return OpenAIClient(api_key=api_key, base_url=base_url, **kwargs)


class LLMClientFactory:
    """Provider name → gateway instance."""

    _builders: dict[str, Callable[..., BaseLLMClient]] = {"openai": _openai}

    @classmethod
    def create(
        cls,
        provider: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs,
    ) -> BaseLLMClient:
        builder = cls._builders.get(provider.strip().lower())
        if builder is None:
            raise ValueError(
                f"Unsupported LLM provider: {provider!r}. Supported: {sorted(cls._builders)}"
            )
        return builder(api_key, base_url, **kwargs)

    @classmethod
    def from_settings(cls, settings) -> BaseLLMClient:
        """The configured provider behind ResilientLLMClient, using settings.llm.retry."""
        retry = settings.llm.retry
        return ResilientLLMClient(
            cls.create(settings.llm.provider, api_key=settings.openai_api_key, base_url=settings.llm_base_url),
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
        )
