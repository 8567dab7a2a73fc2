"""
tools/ — capability registry and dispatch.

    ToolRegistry   name → (schema, handler); frozen after startup
    ToolBus        validate + execute with timeout, never raises from dispatch()
"""

from reactloop.tools.builtin import register_builtin_tools
from reactloop.tools.tool_bus import ToolBus
from reactloop.tools.tool_registry import ToolRegistry
from reactloop.tools.types import ToolSchema

__all__ = ["ToolBus", "ToolRegistry", "ToolSchema", "register_builtin_tools"]
