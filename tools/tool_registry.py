"""
tools/tool_registry.py — Tool Registry

Name → (ToolSchema, async handler) table consulted by the ToolBus on every
dispatch. A name can be registered once; registering it again is a wiring
bug and raises ProgrammerError. Tools stay registered when disabled so that
a specialist calling one gets a clear "disabled" error instead of
"unknown tool".

Usage:
    registry = ToolRegistry()

    @registry.register(
        name="readFile",
        description="Read a text file from the project",
        parameters={"type": "object", "properties": {"path": {"type": "string"}},
                    "required": ["path"]},
    )
    async def read_file(path: str, caller_context: CallerContext) -> str:
        ...

    registry.set_enabled("writeFile", False)
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Collection, Iterator, Optional

from exceptions import ProgrammerError
from observability.logger import get_logger
from tools.types import ToolSchema

log = get_logger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]

_EMPTY_PARAMETERS = {"type": "object", "properties": {}, "required": []}


class ToolRegistry:
    """Handlers take the tool arguments as keywords plus `caller_context`."""

    def __init__(self):
        self._entries: dict[str, tuple[ToolSchema, ToolHandler]] = {}

    def register(
        self,
        name: str,
        description: str,
        category: str = "general",
        parameters: Optional[dict[str, Any]] = None,
        enabled: bool = True,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register_tool(); returns the handler unchanged."""
        def decorator(fn: ToolHandler) -> ToolHandler:
            schema = ToolSchema(
                name=name,
                description=description,
                category=category,
                parameters=parameters or dict(_EMPTY_PARAMETERS),
                enabled=enabled,
            )
            self.register_tool(schema, fn)
            return fn

        return decorator

    def register_tool(self, schema: ToolSchema, handler: ToolHandler) -> None:
        if schema.name in self._entries:
            raise ProgrammerError(f"Tool '{schema.name}' is already registered")
        self._entries[schema.name] = (schema, handler)
        log.debug("tool.registered", tool=schema.name, category=schema.category,
                  enabled=schema.enabled)

    def set_enabled(self, name: str, enabled: bool) -> None:
        if name not in self._entries:
            raise ProgrammerError(f"Cannot toggle unknown tool '{name}'")
        schema, handler = self._entries[name]
        self._entries[name] = (schema.model_copy(update={"enabled": enabled}), handler)
        log.info("tool.toggled", tool=name, enabled=enabled)

    def get_schema(self, name: str) -> Optional[ToolSchema]:
        entry = self._entries.get(name)
        return entry[0] if entry else None

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        entry = self._entries.get(name)
        return entry[1] if entry else None

    def is_registered(self, name: str) -> bool:
        return name in self._entries

    def list_schemas(
        self,
        enabled_only: bool = True,
        allowed: Optional[Collection[str]] = None,
    ) -> list[ToolSchema]:
        """All schemas, optionally only enabled ones and only names in `allowed`."""
        return [
            schema for schema, _ in self._entries.values()
            if (schema.enabled or not enabled_only)
            and (allowed is None or schema.name in allowed)
        ]

    def list_names(self, enabled_only: bool = True) -> list[str]:
        return [s.name for s in self.list_schemas(enabled_only)]

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={list(self._entries)}>"
