"""
reactloop/tools/tool_registry.py — Capability set

Name → (ToolSchema, handler). Filled during startup wiring, then frozen:
after freeze() the set never changes, so every executor in the process
reads the same registry without a lock.

    registry = ToolRegistry()

    @registry.register("list_files", "List files in a directory", category="filesystem",
                       parameters={"type": "object",
                                   "properties": {"path": {"type": "string"}},
                                   "required": ["path"]})
    def list_files(path: str) -> str:
        ...

    registry.freeze()
"""

from __future__ import annotations

from typing import Any, Callable, NamedTuple, Optional

from reactloop.brain.types import ToolSchema as LLMToolSchema
from reactloop.exceptions import RegistryFrozenError
from reactloop.observability.logger import get_logger
from reactloop.tools.types import ToolSchema

log = get_logger(__name__)


class _Entry(NamedTuple):
    schema: ToolSchema
    handler: Callable


class ToolRegistry:

    def __init__(self):
        self._entries: dict[str, _Entry] = {}
        self._frozen = False

    def register(
        self,
        name: str,
        description: str,
        category: str = "general",
        parameters: Optional[dict[str, Any]] = None,
        terminates: bool = False,
    ) -> Callable[[Callable], Callable]:
        """Decorator form of register_tool(). The function comes back unchanged."""
        fields: dict[str, Any] = dict(name=name, description=description, category=category, terminates=terminates)
        if parameters is not None:
            fields["parameters"] = parameters

        def decorator(fn: Callable) -> Callable:
            self.register_tool(ToolSchema(**fields), fn)
            return fn

        return decorator

    def register_tool(self, schema: ToolSchema, handler: Callable) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{schema.name}': tool registry is frozen.")
        if schema.name in self._entries:
            log.warning("tool_registry.replaced", tool=schema.name)
        self._entries[schema.name] = _Entry(schema, handler)
        log.debug("tool_registry.added", tool=schema.name, category=schema.category, terminates=schema.terminates)

    def freeze(self) -> None:
        if self._frozen:
            return
        self._frozen = True
        log.info("tool_registry.frozen", tools=self.list_names())

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def get_schema(self, name: str) -> Optional[ToolSchema]:
        entry = self._entries.get(name)
        return entry.schema if entry else None

    def get_handler(self, name: str) -> Optional[Callable]:
        entry = self._entries.get(name)
        return entry.handler if entry else None

    def is_registered(self, name: str) -> bool:
        return name in self._entries

    def list_schemas(self) -> list[ToolSchema]:
        return [entry.schema for entry in self._entries.values()]

    def list_names(self) -> list[str]:
        return list(self._entries)

    def to_llm_schemas(self) -> list[LLMToolSchema]:
        """Every capability as the gateway advertises it to the model."""
        return [entry.schema.to_llm_schema() for entry in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={self.list_names()} frozen={self._frozen}>"
