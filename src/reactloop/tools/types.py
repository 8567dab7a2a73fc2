"""
reactloop/tools/types.py — Tool System Data Models

Registration metadata shared by the tool registry, the tool bus and the
built-in tools. Runtime call/result types live in brain/types.py, since
they travel through the session log and the LLM gateway.
"""

from __future__ import annotations

from typing import Any
from pydantic import BaseModel, Field

from reactloop.brain.types import ToolSchema as LLMToolSchema


class ToolSchema(BaseModel):
    """
    Full metadata for a registered tool: what it is called, what it does,
    and the JSON schema of its parameters.

    terminates marks a capability whose successful invocation ends the run.
    """
    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    category: str = "general"      # e.g. "filesystem", "search", "control"
    terminates: bool = False

    def to_llm_schema(self) -> LLMToolSchema:
        """Return the provider-agnostic definition the LLM gateway expects."""
        return LLMToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )
