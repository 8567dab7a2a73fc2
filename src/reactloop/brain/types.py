"""
reactloop/brain/types.py — Session log and gateway data models

Everything that travels between the executor, the language model gateway and
the session store. Messages are persisted as JSON, so every type here is a
pydantic model that round-trips through model_dump_json().
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


def _empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"           # cut off by max_tokens
    ERROR = "error"


# ─────────────────────────────────────────────────────────────────────────────
# Capability invocations
# ─────────────────────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """One invocation the model asked for. `id` pairs it with its ToolResult."""
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """
    What ACT observed for one ToolCall. is_terminate marks the designated
    terminate capability; the executor reads it from the last result of a batch.
    """
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False
    is_terminate: bool = False
    duration_ms: float = 0.0

    @classmethod
    def success(
        cls,
        tool_call_id: str,
        name: str,
        content: str,
        is_terminate: bool = False,
        duration_ms: float = 0.0,
    ) -> "ToolResult":
        return cls(
            tool_call_id=tool_call_id,
            name=name,
            content=content,
            is_terminate=is_terminate,
            duration_ms=duration_ms,
        )

    @classmethod
    def error(cls, tool_call_id: str, name: str, error_message: str) -> "ToolResult":
        return cls(tool_call_id=tool_call_id, name=name, content=f"Error: {error_message}", is_error=True)

    def describe(self) -> str:
        return f"Tool '{self.name}' returned: {self.content}"


class ToolSchema(BaseModel):
    """A capability as advertised to the model; adapters convert it to wire form."""
    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=_empty_object_schema)


# ─────────────────────────────────────────────────────────────────────────────
# Session log
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    One entry of a session log.

    ASSISTANT messages may carry tool_calls, TOOL messages carry the
    tool_result they answer. metadata holds tags such as
    {"kind": "think_error"} on a recorded reasoning failure.
    """
    role: Role
    content: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None
    tool_result: Optional[ToolResult] = None
    name: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: Optional[str],
        tool_calls: Optional[list[ToolCall]] = None,
        **metadata: Any,
    ) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or None, metadata=metadata)

    @classmethod
    def tool_response(cls, result: ToolResult) -> "Message":
        return cls(role=Role.TOOL, content=result.content, name=result.name, tool_result=result)


# ─────────────────────────────────────────────────────────────────────────────
# Gateway request / response
# ─────────────────────────────────────────────────────────────────────────────


class LLMConfig(BaseModel):
    """Sampling parameters for a single generate() or stream() call."""
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: float = 1.0
    timeout_seconds: float = 60.0


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMResponse(BaseModel):
    """A THINK decision: narration, requested invocations, or both."""
    content: Optional[str] = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
