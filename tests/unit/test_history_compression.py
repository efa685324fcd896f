"""
tests/unit/test_history_compression.py — Token-Aware History Compression
"""

from __future__ import annotations

import pytest

from agent.types import HistoryEntry, HistoryKind
from prompts.history import (
    HistoryCompressor,
    estimate_tokens,
    render_iteration,
    truncate_to_budget,
)


def _make_history(iterations: int, words_per_entry: int = 40) -> list[HistoryEntry]:
    entries = []
    for i in range(1, iterations + 1):
        entries.append(HistoryEntry(
            iteration=i,
            tool_name="writeFile" if i % 4 == 0 else "readFile",
            success=True,
            content=" ".join(f"word{i}_{n}" for n in range(words_per_entry)),
        ))
    return entries


class TestEstimateTokens:
    def test_words_weighted(self):
        assert estimate_tokens("one two three") == 4   # ceil(3 * 1.3)

    def test_cjk_counts_per_character(self):
        assert estimate_tokens("需求规格") == 4

    def test_mixed(self):
        assert estimate_tokens("SRS 文档") == 4        # 2 CJK + ceil(1.3)

    def test_empty(self):
        assert estimate_tokens("") == 0


class TestTruncate:
    def test_fits_unchanged(self):
        assert truncate_to_budget("a b c", 10) == "a b c"

    def test_zero_budget(self):
        assert truncate_to_budget("a b c", 0) == ""

    def test_result_within_budget(self):
        text = "\n".join(" ".join(["w"] * 20) for _ in range(10))
        for budget in (5, 17, 40, 100):
            assert estimate_tokens(truncate_to_budget(text, budget)) <= budget


class TestHistoryCompressor:
    def test_small_history_not_compressed(self):
        compressor = HistoryCompressor(token_budget=10_000)
        entries = _make_history(4, words_per_entry=5)
        result = compressor.compress(entries)
        assert not result.compressed
        # Newest iteration first
        assert result.render().index("Iteration 4:") < result.render().index("Iteration 1:")

    @pytest.mark.parametrize("iterations", [12, 20, 40])
    def test_rendered_history_within_budget(self, iterations):
        compressor = HistoryCompressor(token_budget=600)
        result = compressor.compress(_make_history(iterations))
        assert result.compressed
        assert estimate_tokens(result.render()) <= 600
        assert result.total_tokens <= 600

    def test_immediate_tier_verbatim(self):
        entries = _make_history(12)
        result = HistoryCompressor(token_budget=600).compress(entries)
        for it in (12, 11, 10):
            group = [e for e in entries if e.iteration == it]
            assert render_iteration(it, group) in result.immediate
        assert "Iteration 9:" not in result.immediate

    def test_recent_tier_is_summarised(self):
        result = HistoryCompressor(token_budget=600).compress(_make_history(12))
        assert result.recent.startswith("Earlier iterations (summarized):")
        assert "Iteration 9: 1 operation(s)" in result.recent

    def test_milestones_keep_writes(self):
        result = HistoryCompressor(token_budget=600).compress(_make_history(12))
        # Iterations 1-4 fall in the milestone tier; 4 is a writeFile
        assert "iteration 4: writeFile (ok)" in result.milestone
        assert "iteration 3:" not in result.milestone

    def test_steering_leads_immediate(self):
        entries = _make_history(12)
        entries.insert(0, HistoryEntry(iteration=0, kind=HistoryKind.STEERING, content="Work smaller."))
        result = HistoryCompressor(token_budget=600).compress(entries)
        assert result.immediate.startswith("Guidance: Work smaller.")

    def test_from_config(self):
        from config.settings import HistoryConfig

        compressor = HistoryCompressor.from_config(HistoryConfig(token_budget=1234))
        assert compressor.token_budget == 1234
        assert compressor.immediate_iterations == 3
        assert compressor.recent_iterations == 5
