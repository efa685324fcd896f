"""
session/models.py — Session Data Models

On-disk shapes owned by the SessionManager:

    .session-log/srsforge-session_main.json       SessionDocument (replaced atomically)
    .session-log/srsforge-operations_main.jsonl   OperationLogEntry per line (append-only)
    .session-log/archives/*.json                  SessionArchive
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

SESSION_SCHEMA_VERSION = "5.0"
FILE_VERSION = "1.0"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_timestamp(previous: Optional[str]) -> str:
    """Now, nudged forward so it is strictly later than `previous`."""
    now = utc_now()
    if previous:
        try:
            prev = parse_iso(previous)
        except ValueError:
            return iso(now)
        if now <= prev:
            now = prev + timedelta(microseconds=1)
    return iso(now)


# ─────────────────────────────────────────────────────────────────────────────
# Session context
# ─────────────────────────────────────────────────────────────────────────────


class SessionMetadata(BaseModel):
    created: str = Field(default_factory=lambda: iso(utc_now()))
    last_modified: str = Field(default_factory=lambda: iso(utc_now()))
    version: str = SESSION_SCHEMA_VERSION
    srs_version: str = "v1.0"


class SessionContext(BaseModel):
    session_context_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_name: Optional[str] = None
    base_dir: Optional[str] = None
    active_files: list[str] = Field(default_factory=list)
    git_branch: Optional[str] = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)


# ─────────────────────────────────────────────────────────────────────────────
# Operation log
# ─────────────────────────────────────────────────────────────────────────────


class OperationType(str, Enum):
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_UPDATED = "SESSION_UPDATED"
    SESSION_ARCHIVED = "SESSION_ARCHIVED"
    SESSION_LOADED = "SESSION_LOADED"
    TOOL_EXECUTION_START = "TOOL_EXECUTION_START"
    TOOL_EXECUTION_END = "TOOL_EXECUTION_END"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    SPECIALIST_INVOKED = "SPECIALIST_INVOKED"
    AI_PLAN_GENERATED = "AI_PLAN_GENERATED"
    USER_QUESTION_ASKED = "USER_QUESTION_ASKED"
    USER_RESPONSE_RECEIVED = "USER_RESPONSE_RECEIVED"
    PLAN_INTERRUPTED = "PLAN_INTERRUPTED"
    PLAN_RESUMED = "PLAN_RESUMED"
    PLAN_TERMINATED = "PLAN_TERMINATED"
    ERROR_OCCURRED = "ERROR_OCCURRED"


class OperationLogEntry(BaseModel):
    type: OperationType
    operation: str
    success: bool = True
    timestamp: str = Field(default_factory=lambda: iso(utc_now()))
    session_context_id: str = ""
    seq: int = 0
    tool_name: Optional[str] = None
    execution_time: Optional[float] = None
    error: Optional[str] = None
    structured_detail: dict[str, Any] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# Files
# ─────────────────────────────────────────────────────────────────────────────


class SessionDocument(BaseModel):
    """
    The one mutable JSON object per workspace. `committed_seq` is the seq
    of the newest operation-log entry this state includes; log lines past
    it were never committed.
    """
    file_version: str = FILE_VERSION
    committed_seq: int = 0
    current_session: Optional[SessionContext] = None
    created_at: str = Field(default_factory=lambda: iso(utc_now()))
    last_updated: str = Field(default_factory=lambda: iso(utc_now()))


class SessionArchive(BaseModel):
    session: SessionContext
    operations: list[OperationLogEntry] = Field(default_factory=list)
    archived_at: str = Field(default_factory=lambda: iso(utc_now()))
    archive_reason: str = "manual_archive"
    file_version: str = FILE_VERSION


class ArchivedSessionInfo(BaseModel):
    archive_file: str
    project_name: Optional[str] = None
    archived_at: str
    archive_reason: str
    operation_count: int = 0


class ArchiveResult(BaseModel):
    success: bool
    archived_path: Optional[str] = None
    preserved_files: list[str] = Field(default_factory=list)
    new_session: Optional[SessionContext] = None
    error: Optional[str] = None

    @property
    def preserved_count(self) -> int:
        return len(self.preserved_files)
