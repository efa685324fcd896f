"""
tools/types.py — Tool System Data Models

Shared types used by the tool registry, the tool bus and the specialist
loop. Every tool is an opaque named capability taking JSON-serialisable
arguments and returning {success, result | error}.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable
from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# Tool registration metadata
# ─────────────────────────────────────────────────────────────────────────────


class ToolSchema(BaseModel):
    """
    Metadata for a registered tool. Rendered into the prompt's tool-schema
    section so the specialist knows what it may call.
    """
    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    category: str = "general"      # e.g. "filesystem", "document", "interaction"
    enabled: bool = True

    def to_prompt_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Runtime call / result types
# ─────────────────────────────────────────────────────────────────────────────


class CallerContext(BaseModel):
    """
    Who is calling a tool. `allowed_tools` is the caller's allow-list;
    None means every enabled tool.
    """
    specialist_id: str
    session_id: str = ""
    iteration: int = 0
    workspace: str = ""
    allowed_tools: Optional[list[str]] = None

    def may_call(self, tool_name: str) -> bool:
        return self.allowed_tools is None or tool_name in self.allowed_tools


class ToolResult(BaseModel):
    """The result of a tool call after execution."""
    success: bool
    result: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @classmethod
    def ok(cls, result: Any = None, duration_ms: float = 0.0) -> "ToolResult":
        return cls(success=True, result=result, duration_ms=duration_ms)

    @classmethod
    def fail(cls, error: str, duration_ms: float = 0.0) -> "ToolResult":
        return cls(success=False, error=error, duration_ms=duration_ms)


# ─────────────────────────────────────────────────────────────────────────────
# Executor interface
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class ToolExecutor(Protocol):
    """Anything that can run a named tool for a specialist."""

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        caller_context: CallerContext,
    ) -> ToolResult:
        ...

    def list_schemas(self, allowed: Optional[list[str]] = None) -> list[ToolSchema]:
        ...
