"""
prompts/history.py — Token-Aware History Compression

When a specialist's tool history no longer fits its token budget, its
iterations are split into three recency tiers:

    immediate   last 3 iterations    verbatim, always kept
    recent      next 5 iterations    one summary line per iteration
    milestone   everything older     milestone lines only

and each older tier is cut to its share of the budget (55/30/15 by
default). Older tiers never borrow budget the immediate tier needs, so
the rendered history stays within budget whenever the immediate tier
alone does.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from itertools import groupby
from typing import Iterable, Optional

from agent.types import HistoryEntry, HistoryKind
from observability.logger import get_logger

log = get_logger(__name__)

_CJK_RE = re.compile(r"[\u4e00-\u9fff]")

# Tools whose successful calls are worth remembering long after the fact
_MILESTONE_TOOLS = {
    "writeFile",
    "createNewProjectFolder",
    "executeMarkdownEdits",
    "executeYAMLEdits",
    "taskComplete",
}


def estimate_tokens(text: str) -> int:
    """CJK characters count one each; other whitespace-separated words 1.3."""
    cjk = len(_CJK_RE.findall(text))
    words = len(_CJK_RE.sub("", text).split())
    return math.ceil(cjk + words * 1.3)


def truncate_to_budget(text: str, budget: int) -> str:
    """Keep the leading part of `text` that fits in `budget` tokens."""
    if budget <= 0:
        return ""
    if estimate_tokens(text) <= budget:
        return text
    kept_lines: list[str] = []
    used = 0
    for line in text.splitlines():
        cost = estimate_tokens(line)
        if used + cost <= budget:
            kept_lines.append(line)
            used += cost
            continue
        # Partial line: add words while the running estimate still fits,
        # leaving room for the ellipsis word.
        room = budget - used
        cjk = words = 0
        taken: list[str] = []
        for word in line.split():
            w_cjk = len(_CJK_RE.findall(word))
            w_word = 1 if _CJK_RE.sub("", word) else 0
            if math.ceil(cjk + w_cjk + (words + w_word + 1) * 1.3) > room:
                break
            cjk += w_cjk
            words += w_word
            taken.append(word)
        if taken:
            kept_lines.append(" ".join(taken) + " …")
        break
    return "\n".join(kept_lines)


def _entry_label(entry: HistoryEntry) -> str:
    if entry.kind == HistoryKind.TOOL_RESULT:
        status = "ok" if entry.success else "failed"
        return f"{entry.tool_name or 'tool'} ({status})"
    if entry.kind == HistoryKind.USER_RESPONSE:
        return "user reply"
    if entry.kind == HistoryKind.STEERING:
        return "guidance"
    return "feedback"


def render_iteration(iteration: int, entries: list[HistoryEntry]) -> str:
    lines = [f"Iteration {iteration}:"]
    lines.extend(f"- {_entry_label(e)}: {e.content}" for e in entries)
    return "\n".join(lines)


def summarize_iteration(iteration: int, entries: list[HistoryEntry]) -> str:
    ok = [e.tool_name or "tool" for e in entries if e.kind == HistoryKind.TOOL_RESULT and e.success]
    failed = [e.tool_name or "tool" for e in entries if e.kind == HistoryKind.TOOL_RESULT and not e.success]
    parts = [f"Iteration {iteration}: {len(entries)} operation(s)"]
    if ok:
        parts.append(f"succeeded: {', '.join(ok)}")
    if failed:
        parts.append(f"failed: {', '.join(failed)}")
    if any(e.kind == HistoryKind.USER_RESPONSE for e in entries):
        parts.append("user replied")
    return "; ".join(parts)


def _is_milestone(entry: HistoryEntry) -> bool:
    if entry.kind == HistoryKind.USER_RESPONSE:
        return True
    if entry.kind == HistoryKind.TOOL_RESULT:
        return entry.success is False or entry.tool_name in _MILESTONE_TOOLS
    return False


@dataclass
class CompressedHistory:
    immediate: str
    recent: str
    milestone: str
    original_tokens: int
    total_tokens: int
    compressed: bool

    def render(self) -> str:
        return "\n\n".join(part for part in (self.immediate, self.recent, self.milestone) if part)


class HistoryCompressor:
    """
    Usage:
        compressor = HistoryCompressor.from_config(settings.history)
        text = compressor.render(entries)
    """

    def __init__(
        self,
        token_budget: int = 40000,
        tier_ratios: Optional[dict[str, float]] = None,
        immediate_iterations: int = 3,
        recent_iterations: int = 5,
    ):
        self.token_budget = token_budget
        self.tier_ratios = tier_ratios or {"immediate": 0.55, "recent": 0.30, "milestone": 0.15}
        self.immediate_iterations = immediate_iterations
        self.recent_iterations = recent_iterations

    @classmethod
    def from_config(cls, history_config) -> "HistoryCompressor":
        return cls(
            token_budget=history_config.token_budget,
            tier_ratios=dict(history_config.tier_ratios),
            immediate_iterations=history_config.immediate_iterations,
            recent_iterations=history_config.recent_iterations,
        )

    def render(self, entries: Iterable[HistoryEntry]) -> str:
        return self.compress(entries).render()

    def compress(self, entries: Iterable[HistoryEntry]) -> CompressedHistory:
        entries = list(entries)
        steering = [e for e in entries if e.kind == HistoryKind.STEERING]
        others = [e for e in entries if e.kind != HistoryKind.STEERING]

        # Newest iteration first; entries within an iteration keep their order
        ordered = sorted(others, key=lambda e: -e.iteration)
        groups = [(it, list(grp)) for it, grp in groupby(ordered, key=lambda e: e.iteration)]

        steering_text = "\n".join(f"Guidance: {e.content}" for e in steering)
        full = "\n\n".join(
            part for part in [steering_text] + [render_iteration(it, g) for it, g in groups] if part
        )
        original_tokens = estimate_tokens(full)
        if original_tokens <= self.token_budget:
            return CompressedHistory(full, "", "", original_tokens, original_tokens, False)

        budget = self.token_budget
        n_imm = self.immediate_iterations
        n_rec = self.recent_iterations
        immediate_groups = groups[:n_imm]
        recent_groups = groups[n_imm:n_imm + n_rec]
        milestone_groups = groups[n_imm + n_rec:]

        immediate = "\n\n".join(
            part for part in [steering_text] + [render_iteration(it, g) for it, g in immediate_groups] if part
        )
        immediate_used = estimate_tokens(immediate)

        recent_budget = min(math.floor(budget * self.tier_ratios["recent"]),
                            max(0, budget - immediate_used))
        recent = ""
        if recent_groups:
            recent = truncate_to_budget(
                "Earlier iterations (summarized):\n"
                + "\n".join(summarize_iteration(it, g) for it, g in recent_groups),
                recent_budget,
            )
        recent_used = estimate_tokens(recent)

        milestone_budget = min(math.floor(budget * self.tier_ratios["milestone"]),
                               max(0, budget - immediate_used - recent_used))
        milestone = ""
        if milestone_groups:
            lines = [
                f"- iteration {it}: {_entry_label(e)}: {e.content}"
                for it, g in milestone_groups
                for e in g
                if _is_milestone(e)
            ]
            first, last = milestone_groups[-1][0], milestone_groups[0][0]
            header = f"Milestones from iterations {first}-{last}:"
            if not lines:
                lines = [f"- {sum(len(g) for _, g in milestone_groups)} routine operation(s)"]
            milestone = truncate_to_budget(header + "\n" + "\n".join(lines), milestone_budget)

        result = CompressedHistory(
            immediate=immediate,
            recent=recent,
            milestone=milestone,
            original_tokens=original_tokens,
            total_tokens=immediate_used + recent_used + estimate_tokens(milestone),
            compressed=True,
        )
        log.info(
            "history.compressed",
            budget=budget,
            original_tokens=original_tokens,
            total_tokens=result.total_tokens,
            immediate_tokens=immediate_used,
            recent_tokens=recent_used,
            iterations=len(groups),
        )
        return result
