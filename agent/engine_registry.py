"""
agent/engine_registry.py — Session Actor Table

Maps a session id to its live Engine. Bounded LRU: when a new engine would
exceed `capacity`, the least recently used idle engine is evicted and
disposed. Engines that are mid-turn or waiting on a user answer are only
evicted when nothing else can be.
"""

from __future__ import annotations

import hashlib
import re
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Iterator, Optional

from agent.engine import Engine, EngineState
from observability.logger import get_logger

log = get_logger(__name__)

MAX_SESSION_ID_LENGTH = 100
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def derive_session_id(workspace: str | Path, project_name: Optional[str]) -> str:
    """
    Stable id for (workspace, project). Long raw ids collapse to the first
    16 hex chars of their md5; short ones keep only [A-Za-z0-9_-].
    """
    raw = f"{workspace}-{project_name or 'default'}"
    if len(raw) > MAX_SESSION_ID_LENGTH:
        return hashlib.md5(raw.encode("utf-8")).hexdigest()[:16]
    return _UNSAFE_ID_CHARS.sub("_", raw)


class EngineRegistry:
    """
    Usage:
        registry = EngineRegistry(capacity=16)
        engine = registry.get_or_create(session_id, lambda: Engine(...))
    """

    def __init__(self, capacity: int = 16):
        if capacity < 1:
            raise ValueError("EngineRegistry capacity must be >= 1")
        self.capacity = capacity
        self._engines: "OrderedDict[str, Engine]" = OrderedDict()

    def get(self, session_id: str) -> Optional[Engine]:
        engine = self._engines.get(session_id)
        if engine is not None:
            self._engines.move_to_end(session_id)
        return engine

    def peek(self, session_id: str) -> Optional[Engine]:
        """Like get() but leaves the LRU order alone."""
        return self._engines.get(session_id)

    def get_or_create(self, session_id: str, factory: Callable[[], Engine]) -> Engine:
        engine = self.get(session_id)
        if engine is not None:
            return engine
        while len(self._engines) >= self.capacity:
            self._evict_one()
        engine = factory()
        self._engines[session_id] = engine
        log.info("engine_registry.created", session_id=session_id, size=len(self._engines))
        return engine

    def remove(self, session_id: str) -> bool:
        """Dispose and forget one engine. Returns False if it was not live."""
        engine = self._engines.pop(session_id, None)
        if engine is None:
            return False
        engine.dispose()
        log.info("engine_registry.removed", session_id=session_id)
        return True

    def dispose_all(self) -> None:
        for session_id in list(self._engines):
            self.remove(session_id)

    def _evict_one(self) -> None:
        victim = next(
            (sid for sid, e in self._engines.items() if _is_idle(e)),
            next(iter(self._engines)),
        )
        engine = self._engines.pop(victim)
        engine.dispose()
        log.info("engine_registry.evicted", session_id=victim, state=engine.state.value)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._engines

    def __len__(self) -> int:
        return len(self._engines)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._engines))


def _is_idle(engine: Engine) -> bool:
    return not engine.lock.locked() and engine.state in (EngineState.IDLE, EngineState.TASK_FINISHED)
