"""
tools/tool_bus.py — Tool Bus

The ToolExecutor the specialist loop talks to. Every tool call a
specialist makes is routed through here.

Flow:
  specialist action → ToolBus.execute()
    → Registry lookup (is tool registered?)
    → Allow-list check (may this specialist call it?)
    → Required-argument check
    → Handler execution (async, optional timeout)
    → ToolResult (success or error)

execute() never raises: failures come back as ToolResult.fail so the
specialist can adapt on its next iteration.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from observability.logger import get_logger
from tools.tool_registry import ToolRegistry
from tools.types import CallerContext, ToolResult, ToolSchema

log = get_logger(__name__)

# Max result size fed back to the model; truncated beyond this
MAX_RESULT_CHARS = 8_000


class ToolBus:
    """
    Usage:
        bus = ToolBus(registry)
        result = await bus.execute("readFile", {"path": "SRS.md"}, caller_context)
    """

    def __init__(self, registry: ToolRegistry, timeout_seconds: Optional[float] = None):
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    def list_schemas(self, allowed: Optional[list[str]] = None) -> list[ToolSchema]:
        """Enabled schemas, narrowed to `allowed` when a specialist has an allow-list."""
        return self.registry.list_schemas(allowed=allowed)

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        caller_context: CallerContext,
    ) -> ToolResult:
        start_ms = time.monotonic() * 1000

        log.info(
            "tool_bus.dispatch",
            tool=tool_name,
            specialist=caller_context.specialist_id,
            iteration=caller_context.iteration,
        )

        # ── Step 1: Registry lookup ───────────────────────────────────────────
        schema = self.registry.get_schema(tool_name)
        handler = self.registry.get_handler(tool_name)
        if schema is None or handler is None or not schema.enabled:
            return ToolResult.fail(
                f"Unknown tool '{tool_name}'. Available tools: {self.registry.list_names()}"
            )

        if not caller_context.may_call(tool_name):
            log.warning(
                "tool_bus.access_denied",
                tool=tool_name,
                specialist=caller_context.specialist_id,
            )
            return ToolResult.fail(
                f"Tool '{tool_name}' is not available to specialist "
                f"'{caller_context.specialist_id}'. Allowed tools: {caller_context.allowed_tools}"
            )

        # ── Step 2: Parameter validation ──────────────────────────────────────
        validation_error = _validate_args(args, schema.parameters)
        if validation_error:
            return ToolResult.fail(f"Invalid parameters: {validation_error}")

        # ── Step 3: Execute ───────────────────────────────────────────────────
        try:
            call = handler(**args, caller_context=caller_context)
            if self.timeout_seconds is not None:
                raw_result = await asyncio.wait_for(call, timeout=self.timeout_seconds)
            else:
                raw_result = await call
        except asyncio.TimeoutError:
            log.error("tool_bus.timeout", tool=tool_name, timeout_seconds=self.timeout_seconds)
            return ToolResult.fail(
                f"Tool '{tool_name}' timed out after {self.timeout_seconds}s",
                duration_ms=time.monotonic() * 1000 - start_ms,
            )
        except Exception as e:
            duration_ms = time.monotonic() * 1000 - start_ms
            log.error(
                "tool_bus.execution_error",
                tool=tool_name,
                error=str(e),
                duration_ms=duration_ms,
                exc_info=True,
            )
            return ToolResult.fail(
                f"Tool execution failed: {type(e).__name__}: {e}",
                duration_ms=duration_ms,
            )

        duration_ms = time.monotonic() * 1000 - start_ms
        log.info("tool_bus.success", tool=tool_name, duration_ms=round(duration_ms, 1))
        return ToolResult.ok(_truncate(raw_result), duration_ms=duration_ms)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _validate_args(args: dict[str, Any], parameters: dict[str, Any]) -> Optional[str]:
    if not isinstance(args, dict):
        return "arguments must be a JSON object"
    missing = [k for k in parameters.get("required", []) if k not in args]
    if missing:
        return f"missing required argument(s): {', '.join(missing)}"
    return None


def _truncate(result: Any) -> Any:
    if isinstance(result, str) and len(result) > MAX_RESULT_CHARS:
        return result[:MAX_RESULT_CHARS] + f"\n…[truncated {len(result) - MAX_RESULT_CHARS} chars]"
    if not isinstance(result, (str, int, float, bool, type(None))):
        text = json.dumps(result, ensure_ascii=False, default=str)
        if len(text) > MAX_RESULT_CHARS:
            return text[:MAX_RESULT_CHARS] + "\n…[truncated]"
    return result
