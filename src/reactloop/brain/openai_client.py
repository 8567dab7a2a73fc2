"""
reactloop/brain/openai_client.py — OpenAI gateway adapter

AsyncOpenAI behind the BaseLLMClient contract. Works against the official
endpoint or anything OpenAI-compatible (LiteLLM proxy, vLLM, DashScope
compatible mode) through base_url.

The SDK's own retries are switched off: ResilientLLMClient owns retry policy,
and stacking both would multiply the attempts.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from reactloop.brain.llm_client import BaseLLMClient
from reactloop.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolSchema,
)
from reactloop.exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from reactloop.observability.logger import get_logger

log = get_logger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
}


# ─────────────────────────────────────────────────────────────────────────────
# Wire conversion
# ─────────────────────────────────────────────────────────────────────────────


def to_openai_message(msg: Message) -> Optional[dict[str, Any]]:
    """One session-log message in chat-completions form, or None to skip it."""
    if msg.role in (Role.SYSTEM, Role.USER):
        return {"role": msg.role.value, "content": msg.content or ""}

    if msg.role is Role.ASSISTANT:
        entry: dict[str, Any] = {"role": "assistant"}
        if msg.content:
            entry["content"] = msg.content
        if msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in msg.tool_calls
            ]
        return entry

    if msg.role is Role.TOOL and msg.tool_result is not None:
        return {
            "role": "tool",
            "tool_call_id": msg.tool_result.tool_call_id,
            "content": msg.tool_result.content,
        }
    return None


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    return [entry for entry in map(to_openai_message, messages) if entry is not None]


def to_openai_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
        }
        for t in tools
    ]


def _parse_arguments(raw: Optional[str]) -> dict[str, Any]:
    # A model occasionally emits broken JSON; keep the text so ACT can report it.
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": raw}


def from_openai_completion(completion: Any) -> LLMResponse:
    """ChatCompletion → LLMResponse (the THINK decision)."""
    choice = completion.choices[0]
    usage = completion.usage
    return LLMResponse(
        content=choice.message.content,
        tool_calls=[
            ToolCall(id=tc.id, name=tc.function.name, arguments=_parse_arguments(tc.function.arguments))
            for tc in choice.message.tool_calls or []
        ],
        finish_reason=_FINISH_REASONS.get(choice.finish_reason or "stop", FinishReason.STOP),
        usage=TokenUsage(
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        ),
        model=completion.model,
    )


def normalise_error(e: Exception) -> LLMError:
    """Map an openai SDK exception onto the LLMError family (retryable or not)."""
    if isinstance(e, openai.AuthenticationError):
        return LLMConnectionError(str(e), provider="openai", status_code=401)
    if isinstance(e, openai.RateLimitError):
        return LLMRateLimitError(str(e), provider="openai")
    if isinstance(e, openai.BadRequestError):
        text = str(e).lower()
        if "context" in text or "too long" in text:
            return LLMContextError(str(e), provider="openai")
        return LLMInvalidRequestError(str(e), provider="openai")
    if isinstance(e, openai.APIConnectionError):
        return LLMConnectionError(str(e), provider="openai")
    return LLMError(str(e), provider="openai", status_code=getattr(e, "status_code", None))


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────


class OpenAIClient(BaseLLMClient):

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        organization: Optional[str] = None,
    ):
        super().__init__(api_key=api_key, base_url=base_url)
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            max_retries=0,
        )

    def _request_args(self, messages: list[Message], config: LLMConfig) -> dict[str, Any]:
        return {
            "model": config.model,
            "messages": to_openai_messages(messages),
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "top_p": config.top_p,
            "timeout": config.timeout_seconds,
        }

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> LLMResponse:
        request = self._request_args(messages, config)
        if tools:
            request["tools"] = to_openai_tools(tools)
            request["tool_choice"] = "auto"

        log.debug("openai.generate.start", model=config.model, messages=len(messages), tools=len(tools or []))
        try:
            completion = await self._client.chat.completions.create(**request)
        except openai.APIError as e:
            raise normalise_error(e) from e

        result = from_openai_completion(completion)
        log.debug(
            "openai.generate.complete",
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            finish_reason=result.finish_reason.value,
            tool_calls=len(result.tool_calls),
        )
        return result

    async def stream(self, messages: list[Message], config: LLMConfig) -> AsyncIterator[str]:
        log.debug("openai.stream.start", model=config.model, messages=len(messages))
        try:
            chunks = await self._client.chat.completions.create(
                **self._request_args(messages, config), stream=True
            )
            async for chunk in chunks:
                delta = chunk.choices[0].delta.content if chunk.choices else None
                if delta:
                    yield delta
        except openai.APIError as e:
            raise normalise_error(e) from e

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
        except (openai.APIError, OSError) as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False
        return True
