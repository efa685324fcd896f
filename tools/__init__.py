"""
tools/__init__.py — SRSForge Tool System

Public interface for the tool system.

Usage:
    from tools import ToolRegistry, ToolBus, setup_tools

    registry = setup_tools()          # registers the built-in tools
    bus = ToolBus(registry)
    result = await bus.execute("readFile", {"path": "SRS.md"}, caller_context)
"""

from __future__ import annotations

from tools.tool_bus import ToolBus
from tools.tool_registry import ToolRegistry
from tools.types import CallerContext, ToolExecutor, ToolResult, ToolSchema

__all__ = [
    "setup_tools",
    "ToolBus",
    "ToolRegistry",
    "CallerContext",
    "ToolExecutor",
    "ToolResult",
    "ToolSchema",
]


def setup_tools(enable_filesystem: bool = True) -> ToolRegistry:
    """Build a ToolRegistry with the built-in tools registered."""
    registry = ToolRegistry()
    if enable_filesystem:
        from tools.filesystem import register_filesystem_tools
        register_filesystem_tools(registry)
    return registry
