"""
reactloop/tools/builtin.py — Built-in Tools

Capabilities every executor gets regardless of what else is registered.
Right now that is just the terminate signal the model calls when the task is
done or can't go further.
"""

from __future__ import annotations

from typing import Optional

from reactloop.tools.tool_bus import DEFAULT_TERMINATE_TOOL
from reactloop.tools.tool_registry import ToolRegistry


def register_builtin_tools(
    registry: ToolRegistry,
    terminate_tool: str = DEFAULT_TERMINATE_TOOL,
) -> None:
    """Register the built-in capabilities on registry (before freeze())."""

    @registry.register(
        name=terminate_tool,
        description=(
            "End the current task. Call this once the request has been fully "
            "answered, or when it cannot be completed. Optionally give a short "
            "reason."
        ),
        category="control",
        terminates=True,
        parameters={
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why the task is ending"},
            },
            "required": [],
        },
    )
    def do_terminate(reason: Optional[str] = None) -> str:
        return f"Task complete: {reason}" if reason else "Task complete."
