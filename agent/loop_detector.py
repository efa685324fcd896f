"""
agent/loop_detector.py — Tool-Call Loop Detection

Watches the tool calls of one specialist run and spots the shapes a stuck
model falls into:

    duplicate   the exact call (name + args) that just succeeded, again
    repeat      the same tool three times in a row
    ping-pong   A-B-A-B over the last four calls

A duplicate is never dispatched. Repeats and ping-pong are only reported;
reading several files in a row is normal work. Consecutive duplicates
count as strikes, and the executor gives up once `max_strikes` is reached.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

REPEAT_RUN = 3
PING_PONG_WINDOW = 4


class LoopKind(str, Enum):
    DUPLICATE = "duplicate"
    REPEAT = "repeat"
    PING_PONG = "ping_pong"


@dataclass(frozen=True)
class LoopSignal:
    kind: LoopKind
    tool_name: str
    detail: str

    @property
    def blocks_call(self) -> bool:
        return self.kind == LoopKind.DUPLICATE


@dataclass(frozen=True)
class _Call:
    name: str
    args_key: str
    success: bool


def _args_key(args: dict[str, Any]) -> str:
    return json.dumps(args, sort_keys=True, ensure_ascii=False, default=str)


class LoopDetector:
    """
    Usage:
        detector = LoopDetector()
        signal = detector.check(name, args)       # before dispatch
        if signal is None or not signal.blocks_call:
            result = await run(name, args)
            detector.record(name, args, result.success)
    """

    def __init__(self, max_strikes: int = 3):
        self.max_strikes = max_strikes
        self.strikes = 0
        self._calls: list[_Call] = []

    def check(self, tool_name: str, args: dict[str, Any]) -> Optional[LoopSignal]:
        key = _args_key(args)
        last = self._calls[-1] if self._calls else None

        if last is not None and last.success and last.name == tool_name and last.args_key == key:
            self.strikes += 1
            return LoopSignal(
                LoopKind.DUPLICATE,
                tool_name,
                f"'{tool_name}' was just called with exactly these arguments and succeeded.",
            )
        self.strikes = 0

        names = [c.name for c in self._calls] + [tool_name]
        if len(names) >= REPEAT_RUN and len(set(names[-REPEAT_RUN:])) == 1:
            return LoopSignal(
                LoopKind.REPEAT,
                tool_name,
                f"'{tool_name}' is being called {REPEAT_RUN} times in a row.",
            )
        if len(names) >= PING_PONG_WINDOW:
            a, b, c, d = names[-PING_PONG_WINDOW:]
            if a == c and b == d and a != b:
                return LoopSignal(
                    LoopKind.PING_PONG,
                    tool_name,
                    f"Calls keep alternating between '{a}' and '{b}'.",
                )
        return None

    def record(self, tool_name: str, args: dict[str, Any], success: bool) -> None:
        self._calls.append(_Call(tool_name, _args_key(args), success))
        # Only the last few calls matter
        del self._calls[:-PING_PONG_WINDOW]

    @property
    def exhausted(self) -> bool:
        return self.strikes >= self.max_strikes
