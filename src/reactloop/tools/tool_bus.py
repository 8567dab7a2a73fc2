"""
reactloop/tools/tool_bus.py — Tool Bus

ACT goes through here. One dispatch per requested invocation:

  ToolCall → lookup → argument check (JSON schema subset) → handler (with timeout)
           → ToolResult, terminate flag set for the designated capability

dispatch() never raises: an unknown tool, bad arguments, a timeout or a
handler exception all come back as an error ToolResult, so the executor can
count the failure and let the model see what went wrong. invoke() is the
by-name form for callers outside the loop, and raises instead.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from typing import Any, Callable, Optional, Union

from reactloop.brain.types import ToolCall, ToolResult
from reactloop.exceptions import ActionError, ToolNotFoundError
from reactloop.observability.logger import get_logger
from reactloop.tools.tool_registry import ToolRegistry

log = get_logger(__name__)

MAX_RESULT_CHARS = 8_000
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_TERMINATE_TOOL = "do_terminate"

_JSON_TYPES: dict[str, Union[type, tuple[type, ...]]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


class ToolBus:
    """
    Args:
        registry:         Frozen (or freezing) tool registry.
        timeout_seconds:  A handler still running after this is abandoned.
        terminate_tool:   Name of the capability that ends a run.
        max_result_chars: Longer results are cut, with a notice appended.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        terminate_tool: str = DEFAULT_TERMINATE_TOOL,
        max_result_chars: int = MAX_RESULT_CHARS,
    ):
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.terminate_tool = terminate_tool
        self.max_result_chars = max_result_chars

    @classmethod
    def from_settings(cls, registry: ToolRegistry, settings) -> "ToolBus":
        return cls(
            registry,
            timeout_seconds=settings.tools.timeout_seconds,
            terminate_tool=settings.tools.terminate_tool,
            max_result_chars=settings.tools.max_result_chars,
        )

    @property
    def tool_count(self) -> int:
        return len(self.registry)

    async def dispatch(self, call: ToolCall) -> ToolResult:
        schema = self.registry.get_schema(call.name)
        handler = self.registry.get_handler(call.name)
        if schema is None or handler is None:
            log.warning("tool_bus.unknown_tool", tool=call.name)
            return ToolResult.error(
                call.id,
                call.name,
                f"Unknown tool '{call.name}'. Available tools: {self.registry.list_names()}",
            )

        problem = _validate_args(call.arguments, schema.parameters)
        if problem:
            log.warning("tool_bus.invalid_args", tool=call.name, problem=problem)
            return ToolResult.error(call.id, call.name, f"Invalid parameters: {problem}")

        started = time.monotonic()
        try:
            raw = await asyncio.wait_for(_call_handler(handler, call.arguments), self.timeout_seconds)
        except asyncio.TimeoutError:
            log.error("tool_bus.timeout", tool=call.name, timeout_seconds=self.timeout_seconds)
            return ToolResult.error(
                call.id, call.name, f"Tool '{call.name}' timed out after {self.timeout_seconds}s"
            )
        except Exception as e:
            log.error("tool_bus.handler_error", tool=call.name, error=str(e), exc_info=True)
            return ToolResult.error(
                call.id, call.name, f"Tool execution failed: {type(e).__name__}: {e}"
            )
        duration_ms = (time.monotonic() - started) * 1000

        content = _truncate(_normalise_result(raw), self.max_result_chars)
        terminates = schema.terminates or call.name == self.terminate_tool
        log.info(
            "tool_bus.done",
            tool=call.name,
            tool_call_id=call.id,
            duration_ms=round(duration_ms, 1),
            chars=len(content),
            terminates=terminates,
        )
        return ToolResult.success(
            tool_call_id=call.id,
            name=call.name,
            content=content,
            is_terminate=terminates,
            duration_ms=duration_ms,
        )

    async def invoke(self, name: str, arguments: Union[dict[str, Any], str, None] = None) -> str:
        """
        Invoke a capability by name and return its text result. `arguments`
        may be a dict or a JSON object string.

        Raises:
            ToolNotFoundError: no such capability.
            ActionError:       bad arguments, or the handler failed.
        """
        if not self.registry.is_registered(name):
            raise ToolNotFoundError(f"Unknown tool '{name}'")
        args = _parse_arguments(name, arguments)

        result = await self.dispatch(ToolCall(id=f"invoke-{name}", name=name, arguments=args))
        if result.is_error:
            raise ActionError(result.content)
        return result.content


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _parse_arguments(name: str, arguments: Union[dict[str, Any], str, None]) -> dict[str, Any]:
    if arguments is None:
        return {}
    if isinstance(arguments, str):
        if not arguments.strip():
            return {}
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise ActionError(f"Arguments for '{name}' are not valid JSON: {e}") from e
    if not isinstance(arguments, dict):
        raise ActionError(f"Arguments for '{name}' must be a JSON object")
    return arguments


async def _call_handler(handler: Callable, arguments: dict[str, Any]) -> Any:
    """Await async handlers; sync handlers run on a worker thread."""
    if inspect.iscoroutinefunction(handler):
        return await handler(**arguments)
    result = await asyncio.to_thread(handler, **arguments)
    return await result if inspect.isawaitable(result) else result


def _validate_args(arguments: dict[str, Any], schema: dict[str, Any]) -> Optional[str]:
    """
    Required fields present, declared types respected. Returns the first
    problem as text, or None. Fields the schema doesn't declare are allowed.
    """
    missing = [f for f in schema.get("required", []) if f not in arguments]
    if missing:
        return f"Missing required field: '{missing[0]}'"

    properties = schema.get("properties", {})
    for field, value in arguments.items():
        declared = properties.get(field, {}).get("type")
        expected = _JSON_TYPES.get(declared) if declared else None
        if expected is None:
            continue
        # bool is an int subclass; JSON keeps them apart
        is_bool_as_number = isinstance(value, bool) and declared in ("integer", "number")
        if is_bool_as_number or not isinstance(value, expected):
            actual = "boolean" if isinstance(value, bool) else type(value).__name__
            return f"Field '{field}': expected {declared}, got {actual}"
    return None


def _normalise_result(result: Any) -> str:
    if result is None:
        return "Done."
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list)):
        try:
            return json.dumps(result, indent=2, default=str)
        except (TypeError, ValueError):
            return str(result)
    return str(result)


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n\n[Output truncated: {omitted} chars omitted. Total: {len(text)} chars]"
