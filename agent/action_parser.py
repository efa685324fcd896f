"""
agent/action_parser.py — One Structured Action per Reply

Every specialist reply must be exactly one JSON object:

    {
      "thought":   {... ThoughtRecord ...},              optional side channel
      "tool_call": {"name": "writeFile", "args": {...}}
    }

A completion is the reserved tool `taskComplete` whose args are a
TaskCompletionSignal; a clarification request is the reserved tool
`askQuestion`. The legacy array form {"tool_calls": [<one call>]} is
accepted as long as it holds exactly one call. Both forms at once, or
neither, is a malformed reply.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from agent.types import TaskCompletionSignal, ThoughtRecord
from exceptions import ActionParseError
from tools.types import ToolSchema

TASK_COMPLETE = "taskComplete"
ASK_QUESTION = "askQuestion"
RECORD_THOUGHT = "recordThought"

RESERVED_TOOL_SCHEMAS = [
    ToolSchema(
        name=TASK_COMPLETE,
        description=(
            "End your turn. next_step_type is CONTINUE_SAME_SPECIALIST (keep working), "
            "HANDOFF_TO_SPECIALIST (your part is done, the plan moves on) or "
            "TASK_FINISHED (the whole task is done)."
        ),
        parameters={
            "type": "object",
            "properties": {
                "next_step_type": {
                    "type": "string",
                    "enum": ["CONTINUE_SAME_SPECIALIST", "HANDOFF_TO_SPECIALIST", "TASK_FINISHED"],
                },
                "summary": {"type": "string"},
                "context_for_next": {"type": "object"},
            },
            "required": ["next_step_type", "summary"],
        },
        category="control",
    ),
    ToolSchema(
        name=ASK_QUESTION,
        description="Ask the user a clarifying question and wait for the answer.",
        parameters={
            "type": "object",
            "properties": {"question": {"type": "string"}},
            "required": ["question"],
        },
        category="control",
    ),
    ToolSchema(
        name=RECORD_THOUGHT,
        description=(
            "Record a working-memory thought without touching any file. Prefer the "
            "top-level \"thought\" field alongside a real tool call."
        ),
        parameters={
            "type": "object",
            "properties": {
                "thinking_type": {
                    "type": "string",
                    "enum": ["planning", "analysis", "synthesis", "reflection", "derivation"],
                },
                "context": {"type": "string"},
                "content": {"type": "object"},
                "next_steps": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["thinking_type", "content"],
        },
        category="control",
    ),
]


@dataclass
class SpecialistAction:
    """One parsed reply."""
    tool_name: str
    args: dict[str, Any]
    thought: Optional[ThoughtRecord] = None
    completion: Optional[TaskCompletionSignal] = None

    @property
    def is_completion(self) -> bool:
        return self.completion is not None

    @property
    def is_question(self) -> bool:
        return self.tool_name == ASK_QUESTION


# ─────────────────────────────────────────────────────────────────────────────
# JSON extraction
# ─────────────────────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _find_json_object(text: str) -> Optional[str]:
    """First balanced {...} block, skipping braces inside string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def _load_object(text: str) -> dict[str, Any]:
    cleaned = _strip_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        candidate = _find_json_object(cleaned)
        if candidate is None:
            raise ActionParseError("Reply contains no JSON object", raw_text=text)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise ActionParseError(f"Reply is not valid JSON: {e}", raw_text=text) from e
    if not isinstance(data, dict):
        raise ActionParseError("Reply must be a JSON object", raw_text=text)
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def parse_action(text: str) -> SpecialistAction:
    """Parse a model reply into exactly one SpecialistAction."""
    data = _load_object(text)

    single = data.get("tool_call")
    many = data.get("tool_calls")
    if single is not None and many is not None:
        raise ActionParseError("Reply has both 'tool_call' and 'tool_calls'", raw_text=text)
    if many is not None:
        if not isinstance(many, list) or len(many) != 1:
            raise ActionParseError(
                "Reply must select exactly one tool; 'tool_calls' has "
                f"{len(many) if isinstance(many, list) else 'invalid'} entries",
                raw_text=text,
            )
        single = many[0]
    if single is None:
        raise ActionParseError("Reply selects no tool and no taskComplete", raw_text=text)
    if not isinstance(single, dict) or not isinstance(single.get("name"), str):
        raise ActionParseError("tool_call must be an object with a string 'name'", raw_text=text)

    name = single["name"]
    args = single.get("args", single.get("arguments", {})) or {}
    if not isinstance(args, dict):
        raise ActionParseError(f"Arguments for '{name}' must be a JSON object", raw_text=text)

    thought = None
    raw_thought = data.get("thought")
    if name == RECORD_THOUGHT and raw_thought is None:
        raw_thought = args
    if raw_thought is not None:
        try:
            thought = ThoughtRecord.model_validate(raw_thought)
        except ValidationError as e:
            raise ActionParseError(f"Invalid thought record: {e.errors()[0]['msg']}", raw_text=text) from e

    completion = None
    if name == TASK_COMPLETE:
        try:
            completion = TaskCompletionSignal.model_validate(args)
        except ValidationError as e:
            raise ActionParseError(
                f"Invalid taskComplete arguments: {e.errors()[0]['msg']}", raw_text=text
            ) from e

    if name == ASK_QUESTION and not str(args.get("question", "")).strip():
        raise ActionParseError("askQuestion requires a non-empty 'question'", raw_text=text)

    return SpecialistAction(tool_name=name, args=args, thought=thought, completion=completion)
