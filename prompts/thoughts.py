"""
prompts/thoughts.py — Thought Record Separation

Specialists emit thought records as a structured side channel next to
their tool call, so they normally arrive on HistoryEntry.thought.
Older transcripts carry them inline as a marked JSON block:

    <thought_record>{"thinking_type": "analysis", ...}</thought_record>

separate_thoughts() handles both shapes and returns the thoughts
(newest first) plus the tool history with every thought removed.
"""

from __future__ import annotations

import json
import re
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import ValidationError

from agent.types import HistoryEntry, ThoughtRecord
from observability.logger import get_logger

log = get_logger(__name__)

THOUGHT_OPEN = "<thought_record>"
THOUGHT_CLOSE = "</thought_record>"

_MARKER_RE = re.compile(
    re.escape(THOUGHT_OPEN) + r"(.*?)" + re.escape(THOUGHT_CLOSE),
    re.DOTALL,
)

MAX_THOUGHTS_PER_RUN = 10


def embed_thought(record: ThoughtRecord) -> str:
    """Inline form of a thought, for transcripts that only carry text."""
    return f"{THOUGHT_OPEN}{record.model_dump_json()}{THOUGHT_CLOSE}"


def _timestamp_key(record: ThoughtRecord) -> datetime:
    try:
        parsed = datetime.fromisoformat(record.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_newest_first(thoughts: Iterable[ThoughtRecord]) -> list[ThoughtRecord]:
    return sorted(thoughts, key=_timestamp_key, reverse=True)


def _extract_inline(text: str) -> tuple[list[ThoughtRecord], str]:
    found: list[ThoughtRecord] = []

    def _take(match: re.Match) -> str:
        try:
            found.append(ThoughtRecord.model_validate(json.loads(match.group(1))))
        except (json.JSONDecodeError, ValidationError):
            log.warning("thoughts.inline_unparseable", snippet=match.group(1)[:80])
            return match.group(0)
        return ""

    remaining = _MARKER_RE.sub(_take, text)
    return found, remaining


def separate_thoughts(
    entries: Iterable[HistoryEntry],
) -> tuple[list[ThoughtRecord], list[HistoryEntry]]:
    """
    Split thoughts out of tool history.

    Returns (thoughts newest first, remaining entries in original order).
    An entry left with no content once its thoughts are removed is dropped.
    """
    thoughts: list[ThoughtRecord] = []
    remaining: list[HistoryEntry] = []

    for entry in entries:
        if entry.thought is not None:
            thoughts.append(entry.thought)
        inline, text = _extract_inline(entry.content)
        thoughts.extend(inline)
        if not text.strip():
            continue
        remaining.append(entry.model_copy(update={"content": text.strip(), "thought": None}))

    return sort_newest_first(thoughts), remaining


def format_thoughts(thoughts: list[ThoughtRecord]) -> str:
    """Render thoughts for prompt section 0. Expects newest first."""
    if not thoughts:
        return ""
    blocks: list[str] = []
    for i, t in enumerate(thoughts, start=1):
        lines = [f"### Thought {i} ({t.thinking_type.value}) at {t.timestamp}"]
        if t.context:
            lines.append(f"Context: {t.context}")
        if t.content:
            lines.append("Content:")
            lines.append(json.dumps(t.content, ensure_ascii=False, indent=2))
        if t.next_steps:
            lines.append("Next steps:")
            lines.extend(f"- {step}" for step in t.next_steps)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class ThoughtLog:
    """Per-run bounded store; the oldest thought is dropped past the cap."""

    def __init__(self, records: Optional[Iterable[ThoughtRecord]] = None,
                 max_records: int = MAX_THOUGHTS_PER_RUN):
        self._records: deque[ThoughtRecord] = deque(records or (), maxlen=max_records)

    def add(self, record: ThoughtRecord) -> None:
        self._records.append(record)

    def records(self) -> list[ThoughtRecord]:
        return list(self._records)

    def newest_first(self) -> list[ThoughtRecord]:
        return sort_newest_first(self._records)

    def __len__(self) -> int:
        return len(self._records)
