"""
tests/unit/test_logger.py — Structured Logger Helpers
"""

from __future__ import annotations

import structlog

from observability.logger import _cap_long_fields, bind_session, clear_session


class TestCapLongFields:
    def test_long_values_capped(self):
        cap = _cap_long_fields(10)
        out = cap(None, "info", {"event": "specialist.reply", "raw": "x" * 25, "n": 5})
        assert out["raw"] == "x" * 10 + "... [+15 chars]"
        assert out["n"] == 5

    def test_event_name_untouched(self):
        cap = _cap_long_fields(3)
        assert cap(None, "info", {"event": "session.updated"})["event"] == "session.updated"


class TestSessionBinding:
    def test_bind_and_clear(self):
        bind_session("sess-1", "Shop")
        assert structlog.contextvars.get_contextvars() == {"session_id": "sess-1", "project": "Shop"}
        clear_session()
        assert structlog.contextvars.get_contextvars() == {}
