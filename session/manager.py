"""
session/manager.py — Session Manager

Owns the one current SessionContext of a workspace and its operation log.

Persistence is a two-file transaction:

    1. append the operation-log entries (each with a fresh `seq`) and fsync
    2. atomically replace the session document (tempfile + fsync + os.replace)
       with `committed_seq` set to the last appended seq

A crash between the two steps leaves log lines whose seq is greater than
`committed_seq`; they are never returned and are compacted away on the
next load. A retried write reuses the same seq, and readers keep the last
line per seq, so retries never duplicate entries.

Usage:
    manager = SessionManager.from_settings(settings, workspace)
    session = await manager.get_current_session()
    await manager.update_session_with_log(
        OperationLogEntry(type=OperationType.SPECIALIST_INVOKED, operation="fr_writer"),
        {"active_files": ["SRS.md"]},
    )
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from exceptions import SessionIOError
from observability.logger import get_logger
from session.models import (
    ArchivedSessionInfo,
    ArchiveResult,
    OperationLogEntry,
    OperationType,
    SessionArchive,
    SessionContext,
    SessionDocument,
    SessionMetadata,
    iso,
    next_timestamp,
    parse_iso,
    utc_now,
)
from session.paths import SessionPaths, list_user_files

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# File helpers
# ─────────────────────────────────────────────────────────────────────────────


def _atomic_write_text(path: Path, content: str) -> None:
    """Write-to-temp-then-replace in the target's directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.stem + "_", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _append_lines(path: Path, lines: Iterable[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def _merge_session(current: SessionContext, updates: dict[str, Any]) -> SessionContext:
    """Shallow merge, except `metadata` which merges field by field."""
    data = current.model_dump()
    for key, value in updates.items():
        if key == "metadata" and isinstance(value, dict):
            data["metadata"] = {**data["metadata"], **value}
        elif key == "metadata" and isinstance(value, SessionMetadata):
            data["metadata"] = {**data["metadata"], **value.model_dump(exclude_unset=True)}
        else:
            data[key] = value
    return SessionContext.model_validate(data)


# ─────────────────────────────────────────────────────────────────────────────
# SessionManager
# ─────────────────────────────────────────────────────────────────────────────


class SessionManager:
    """
    One instance per workspace. Every public write takes `self._lock`, reads
    the current document, merges and calls `_commit_locked` before releasing
    it, so concurrent updates never merge against a stale copy. Commits are
    retried `write_retries` times before raising SessionIOError. The
    in-memory document only changes after a successful commit, so a failed
    write leaves it untouched.
    """

    def __init__(
        self,
        workspace: str | Path,
        *,
        log_dir_name: str = ".session-log",
        write_retries: int = 3,
        max_age_hours: float = 24.0,
    ):
        self.workspace = Path(workspace)
        self.paths = SessionPaths(self.workspace, log_dir_name)
        self.write_retries = max(1, int(write_retries))
        self.max_age_hours = max_age_hours
        self._lock = asyncio.Lock()
        self._document: Optional[SessionDocument] = None
        self._loaded = False
        self._next_seq = 1

    @classmethod
    def from_settings(cls, settings, workspace: str | Path) -> "SessionManager":
        return cls(
            workspace,
            log_dir_name=settings.session.log_dir_name,
            write_retries=settings.session.write_retries,
            max_age_hours=settings.session.max_age_hours,
        )

    # ── Loading ───────────────────────────────────────────────────────────────

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True

        path = self.paths.session_file
        document: Optional[SessionDocument] = None
        if path.exists():
            try:
                document = SessionDocument.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                log.warning("session.load_failed", path=str(path), error=str(e))

        self._document = document
        committed = self._committed_seq()
        entries, dirty = self._read_log(committed)
        self._next_seq = max([0] + [e.seq for e in entries]) + 1

        # Only a readable document can tell which lines were never committed
        if dirty and document is not None:
            self._compact_log(entries)

        if document and document.current_session:
            log.info(
                "session.loaded",
                session_context_id=document.current_session.session_context_id,
                project=document.current_session.project_name,
                committed_seq=committed,
            )

    def _committed_seq(self) -> int:
        """Highest visible seq. Missing or corrupt document: every line counts."""
        return self._document.committed_seq if self._document else sys.maxsize

    def _read_log(self, committed_seq: int) -> tuple[list[OperationLogEntry], bool]:
        """Committed entries in seq order, and whether the file held anything else."""
        path = self.paths.operations_file
        if not path.exists():
            return [], False

        by_seq: dict[int, OperationLogEntry] = {}
        dirty = False
        try:
            raw_lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            log.warning("session.log_read_failed", path=str(path), error=str(e))
            return [], False

        for line in raw_lines:
            if not line.strip():
                continue
            try:
                entry = OperationLogEntry.model_validate_json(line)
            except ValidationError:
                dirty = True
                continue
            if entry.seq > committed_seq:
                dirty = True
                continue
            if entry.seq in by_seq:
                dirty = True
            by_seq[entry.seq] = entry
        return [by_seq[s] for s in sorted(by_seq)], dirty

    def _compact_log(self, entries: list[OperationLogEntry]) -> None:
        try:
            _atomic_write_text(
                self.paths.operations_file,
                "".join(e.model_dump_json() + "\n" for e in entries),
            )
            log.info("session.log_compacted", entries=len(entries))
        except OSError as e:
            log.warning("session.log_compact_failed", error=str(e))

    # ── Transaction ───────────────────────────────────────────────────────────

    def _write_transaction(self, document: SessionDocument, entries: list[OperationLogEntry]) -> None:
        if entries:
            _append_lines(self.paths.operations_file, [e.model_dump_json() for e in entries])
        _atomic_write_text(self.paths.session_file, document.model_dump_json(indent=2))

    async def _commit_locked(
        self,
        session: Optional[SessionContext],
        entries: list[OperationLogEntry],
    ) -> SessionDocument:
        """Persist one transaction. The caller holds `self._lock`."""
        self._ensure_loaded()
        previous = self._document

        seq = self._next_seq
        stamped: list[OperationLogEntry] = []
        for entry in entries:
            stamped.append(
                entry.model_copy(
                    update={
                        "seq": seq,
                        "session_context_id": entry.session_context_id
                        or (session.session_context_id if session else ""),
                    }
                )
            )
            seq += 1

        document = SessionDocument(
            committed_seq=stamped[-1].seq if stamped else max(0, self._next_seq - 1),
            current_session=session,
            created_at=previous.created_at if previous else iso(utc_now()),
            last_updated=next_timestamp(previous.last_updated if previous else None),
        )

        last_error: Optional[OSError] = None
        for attempt in range(1, self.write_retries + 1):
            try:
                await asyncio.to_thread(self._write_transaction, document, stamped)
                break
            except OSError as e:
                last_error = e
                log.warning(
                    "session.write_retry",
                    attempt=attempt,
                    max_attempts=self.write_retries,
                    error=str(e),
                )
        else:
            log.error("session.write_failed", error=str(last_error))
            raise SessionIOError(
                f"Failed to persist session after {self.write_retries} attempts: {last_error}"
            ) from last_error

        self._document = document
        self._next_seq = seq
        return document

    def _current(self) -> Optional[SessionContext]:
        self._ensure_loaded()
        if self._document is None or self._document.current_session is None:
            return None
        return self._document.current_session.model_copy(deep=True)

    # ── Public API ────────────────────────────────────────────────────────────

    async def get_current_session(self) -> Optional[SessionContext]:
        """The current session, loaded once per manager. A copy; mutate via update_*."""
        return self._current()

    def _stamped(self, session: SessionContext) -> SessionContext:
        return session.model_copy(
            update={
                "metadata": session.metadata.model_copy(
                    update={"last_modified": next_timestamp(session.metadata.last_modified)}
                )
            }
        )

    async def update_session(self, updates: dict[str, Any]) -> Optional[SessionContext]:
        """Merge `updates` into the current session and persist. No-op without a session."""
        async with self._lock:
            current = self._current()
            if current is None:
                log.warning("session.update_without_session", keys=sorted(updates))
                return None
            merged = self._stamped(_merge_session(current, updates))
            await self._commit_locked(merged, [])
        log.debug("session.updated", keys=sorted(updates))
        return merged.model_copy(deep=True)

    async def update_session_with_log(
        self,
        log_entry: OperationLogEntry,
        state_updates: Optional[dict[str, Any]] = None,
    ) -> Optional[SessionContext]:
        """Append `log_entry` and apply `state_updates` as one transaction."""
        async with self._lock:
            current = self._current()
            session = current
            if state_updates:
                if current is None:
                    log.warning("session.update_without_session", keys=sorted(state_updates))
                else:
                    session = self._stamped(_merge_session(current, state_updates))
            await self._commit_locked(session, [log_entry])
        log.debug(
            "session.logged",
            operation_type=log_entry.type.value,
            operation=log_entry.operation,
            success=log_entry.success,
        )
        return session.model_copy(deep=True) if session else None

    async def create_new_session(self, project_name: Optional[str] = None) -> SessionContext:
        async with self._lock:
            return await self._create_locked(project_name)

    async def _create_locked(self, project_name: Optional[str]) -> SessionContext:
        session = self._fresh_session(project_name)
        await self._commit_locked(
            session,
            [
                OperationLogEntry(
                    type=OperationType.SESSION_CREATED,
                    operation=f"Created session for project {project_name or '(unnamed)'}",
                    structured_detail={"project_name": project_name, "base_dir": session.base_dir},
                )
            ],
        )
        log.info(
            "session.created",
            session_context_id=session.session_context_id,
            project=project_name,
        )
        return session.model_copy(deep=True)

    def _fresh_session(self, project_name: Optional[str]) -> SessionContext:
        now = iso(utc_now())
        return SessionContext(
            project_name=project_name,
            base_dir=str(self.paths.project_dir(project_name)) if project_name else None,
            active_files=[],
            metadata=SessionMetadata(created=now, last_modified=now),
        )

    async def archive_current_and_start_new(
        self,
        new_project_name: Optional[str] = None,
        reason: str = "new_project",
    ) -> ArchiveResult:
        """
        Serialize the current session (with its operations) into the archive
        directory and make a fresh session current. User files under the old
        base_dir are listed, never moved or deleted.
        """
        async with self._lock:
            return await self._archive_locked(new_project_name, reason)

    async def _archive_locked(self, new_project_name: Optional[str], reason: str) -> ArchiveResult:
        current = self._current()
        if current is None:
            try:
                new_session = await self._create_locked(new_project_name)
            except SessionIOError as e:
                return ArchiveResult(success=False, error=str(e))
            return ArchiveResult(success=True, new_session=new_session)

        preserved = list_user_files(current.base_dir)
        operations = await self.get_operations(session_context_id=current.session_context_id)
        now = utc_now()
        archive = SessionArchive(
            session=current,
            operations=operations,
            archived_at=iso(now),
            archive_reason=reason,
        )
        archive_path = self.paths.archive_file(
            current.project_name, now.strftime("%Y%m%d-%H%M%S-%f"), reason
        )

        new_session = self._fresh_session(new_project_name)
        try:
            await asyncio.to_thread(_atomic_write_text, archive_path, archive.model_dump_json(indent=2))
            await self._commit_locked(
                new_session,
                [
                    OperationLogEntry(
                        type=OperationType.SESSION_ARCHIVED,
                        operation=f"Archived session for project {current.project_name or '(unnamed)'}",
                        session_context_id=current.session_context_id,
                        structured_detail={
                            "archive_file": str(archive_path),
                            "reason": reason,
                            "preserved_files": len(preserved),
                        },
                    ),
                    OperationLogEntry(
                        type=OperationType.SESSION_CREATED,
                        operation=f"Created session for project {new_project_name or '(unnamed)'}",
                        session_context_id=new_session.session_context_id,
                        structured_detail={
                            "project_name": new_project_name,
                            "base_dir": new_session.base_dir,
                        },
                    ),
                ],
            )
        except (OSError, SessionIOError) as e:
            log.error("session.archive_failed", error=str(e), project=current.project_name)
            return ArchiveResult(success=False, preserved_files=preserved, error=str(e))

        log.info(
            "session.archived",
            archive_file=str(archive_path),
            reason=reason,
            preserved_files=len(preserved),
            new_project=new_project_name,
        )
        return ArchiveResult(
            success=True,
            archived_path=str(archive_path),
            preserved_files=preserved,
            new_session=new_session.model_copy(deep=True),
        )

    async def is_session_expired(self, max_age_hours: Optional[float] = None) -> bool:
        current = await self.get_current_session()
        if current is None:
            return False
        hours = self.max_age_hours if max_age_hours is None else max_age_hours
        try:
            last = parse_iso(current.metadata.last_modified)
        except ValueError:
            log.warning("session.bad_timestamp", value=current.metadata.last_modified)
            return True
        return utc_now() - last > timedelta(hours=hours)

    async def auto_archive_expired(self, max_age_hours: Optional[float] = None) -> Optional[ArchiveResult]:
        """Archive and restart the current session if it is older than the limit."""
        if not await self.is_session_expired(max_age_hours):
            return None
        current = await self.get_current_session()
        return await self.archive_current_and_start_new(
            current.project_name if current else None, reason="expired"
        )

    async def get_operations(
        self,
        limit: Optional[int] = None,
        session_context_id: Optional[str] = None,
    ) -> list[OperationLogEntry]:
        """Committed log entries, oldest first; `limit` keeps the newest N."""
        self._ensure_loaded()
        entries, _ = await asyncio.to_thread(self._read_log, self._committed_seq())
        if session_context_id is not None:
            entries = [e for e in entries if e.session_context_id == session_context_id]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def list_archived_sessions(self) -> list[ArchivedSessionInfo]:
        """Archives newest first. Unreadable archive files are skipped."""
        archive_dir = self.paths.archive_dir
        if not archive_dir.is_dir():
            return []
        infos: list[ArchivedSessionInfo] = []
        for path in archive_dir.glob("*.json"):
            try:
                archive = SessionArchive.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                log.warning("session.archive_unreadable", path=str(path), error=str(e))
                continue
            infos.append(
                ArchivedSessionInfo(
                    archive_file=str(path),
                    project_name=archive.session.project_name,
                    archived_at=archive.archived_at,
                    archive_reason=archive.archive_reason,
                    operation_count=len(archive.operations),
                )
            )
        infos.sort(key=lambda i: i.archived_at, reverse=True)
        return infos

    def read_document_from_disk(self) -> Optional[dict[str, Any]]:
        """Raw on-disk document, bypassing the in-memory copy."""
        path = self.paths.session_file
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))
