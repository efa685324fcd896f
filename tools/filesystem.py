"""
tools/filesystem.py — Workspace Filesystem Tools

Minimal file access for specialists, confined to the caller's workspace.

Registered tools:
  - readFile   → read a text file
  - writeFile  → write/overwrite a text file
  - listFiles  → list a directory
"""

from __future__ import annotations

from pathlib import Path

from tools.tool_registry import ToolRegistry
from tools.types import CallerContext

# Hard cap: refuse to load files larger than this into the prompt
_MAX_READ_BYTES = 2 * 1024 * 1024  # 2 MB


def _resolve_in_workspace(path: str, caller_context: CallerContext) -> Path:
    """Resolve `path` against the workspace and refuse anything outside it."""
    if not caller_context.workspace:
        raise PermissionError("No workspace is bound to this call")
    root = Path(caller_context.workspace).expanduser().resolve()
    resolved = (root / path).resolve()
    if resolved != root and root not in resolved.parents:
        raise PermissionError(f"Path escapes the workspace: {path}")
    return resolved


def register_filesystem_tools(registry: ToolRegistry) -> None:
    """Register readFile / writeFile / listFiles on `registry`."""

    @registry.register(
        name="readFile",
        description="Read a UTF-8 text file relative to the project workspace.",
        category="filesystem",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Workspace-relative path"}},
            "required": ["path"],
        },
    )
    async def read_file(path: str, caller_context: CallerContext) -> str:
        resolved = _resolve_in_workspace(path, caller_context)
        if not resolved.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        size = resolved.stat().st_size
        if size > _MAX_READ_BYTES:
            return f"[File too large to read directly: {size:,} bytes]"
        return resolved.read_text(encoding="utf-8")

    @registry.register(
        name="writeFile",
        description="Create or overwrite a UTF-8 text file relative to the project workspace.",
        category="filesystem",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Workspace-relative path"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["path", "content"],
        },
    )
    async def write_file(path: str, content: str, caller_context: CallerContext) -> str:
        resolved = _resolve_in_workspace(path, caller_context)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
        return f"Written {len(content)} characters to {path}"

    @registry.register(
        name="listFiles",
        description="List files and directories under a workspace-relative directory.",
        category="filesystem",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Directory, default '.'"}},
            "required": [],
        },
    )
    async def list_files(caller_context: CallerContext, path: str = ".") -> list[str]:
        resolved = _resolve_in_workspace(path, caller_context)
        if not resolved.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        return sorted(
            p.name + ("/" if p.is_dir() else "")
            for p in resolved.iterdir()
            if not p.name.startswith(".")
        )
