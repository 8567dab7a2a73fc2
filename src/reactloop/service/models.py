"""
reactloop/service/models.py — Caller-facing request/response models
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class AgentRequest(BaseModel):
    """Advanced request. prompt is required; everything else optional."""
    prompt: str
    session_id: Optional[str] = None
    system_prompt: Optional[str] = None
    max_steps: Optional[int] = None

    @field_validator("prompt")
    @classmethod
    def _non_blank_prompt(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("max_steps")
    @classmethod
    def _positive_steps(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_steps must be positive")
        return v


class AgentResponse(BaseModel):
    status: ResponseStatus
    result: Optional[str] = None
    agent_state: Optional[str] = None
    session_id: Optional[str] = None
    message: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)
    execution_time_ms: Optional[float] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.SUCCESS

    @classmethod
    def success(
        cls,
        result: Optional[str] = None,
        agent_state: Optional[str] = None,
        session_id: Optional[str] = None,
        execution_time_ms: Optional[float] = None,
        message: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> "AgentResponse":
        return cls(
            status=ResponseStatus.SUCCESS,
            result=result,
            agent_state=agent_state,
            session_id=session_id,
            execution_time_ms=execution_time_ms,
            message=message,
            data=data or {},
        )

    @classmethod
    def error(
        cls,
        message: str,
        session_id: Optional[str] = None,
        agent_state: Optional[str] = None,
        result: Optional[str] = None,
    ) -> "AgentResponse":
        return cls(
            status=ResponseStatus.ERROR,
            message=message,
            session_id=session_id,
            agent_state=agent_state,
            result=result,
        )

    @classmethod
    def warning(cls, message: str, session_id: Optional[str] = None) -> "AgentResponse":
        return cls(status=ResponseStatus.WARNING, message=message, session_id=session_id)
