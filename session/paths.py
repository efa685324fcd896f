"""
session/paths.py — Session File Layout

All session files live under <workspace>/<log_dir_name> (".session-log"
by default). Project directories are derived from a sanitised project
name so any user-typed name maps to a safe single path segment.
"""

from __future__ import annotations

import fnmatch
import re
import unicodedata
from pathlib import Path
from typing import Optional

SESSION_FILE_NAME = "srsforge-session_main.json"
OPERATIONS_FILE_NAME = "srsforge-operations_main.jsonl"
ARCHIVE_DIR_NAME = "archives"

MAX_PROJECT_NAME_LENGTH = 50
DEFAULT_PROJECT_NAME = "unnamed_project"

_UNSAFE_CHARS_RE = re.compile(r'[\\/:"*?<>|\x00]')

# Files the system itself writes; everything else under a project is the user's
GENERATED_PATTERNS = (".*", "*.tmp", "*.lock")


def sanitize_project_name(name: Optional[str]) -> str:
    """NFC-normalise, replace path-unsafe characters with '_', cap the length."""
    if not name:
        return DEFAULT_PROJECT_NAME
    cleaned = _UNSAFE_CHARS_RE.sub("_", unicodedata.normalize("NFC", name)).strip()
    cleaned = cleaned.strip(".")
    if not cleaned:
        return DEFAULT_PROJECT_NAME
    return cleaned[:MAX_PROJECT_NAME_LENGTH].rstrip()


def is_generated(path: Path, root: Path) -> bool:
    """True if any segment of `path` below `root` matches a generated pattern."""
    for part in path.relative_to(root).parts:
        if any(fnmatch.fnmatch(part, pattern) for pattern in GENERATED_PATTERNS):
            return True
    return False


def list_user_files(base_dir: Optional[str]) -> list[str]:
    """All non-generated regular files under base_dir, sorted."""
    if not base_dir:
        return []
    root = Path(base_dir)
    if not root.is_dir():
        return []
    return sorted(
        str(p) for p in root.rglob("*")
        if p.is_file() and not is_generated(p, root)
    )


class SessionPaths:
    def __init__(self, workspace: str | Path, log_dir_name: str = ".session-log"):
        self.workspace = Path(workspace)
        self.log_dir = self.workspace / log_dir_name

    @property
    def session_file(self) -> Path:
        return self.log_dir / SESSION_FILE_NAME

    @property
    def operations_file(self) -> Path:
        return self.log_dir / OPERATIONS_FILE_NAME

    @property
    def archive_dir(self) -> Path:
        return self.log_dir / ARCHIVE_DIR_NAME

    def project_dir(self, project_name: Optional[str]) -> Path:
        return self.workspace / sanitize_project_name(project_name)

    def archive_file(self, project_name: Optional[str], stamp: str, reason: str) -> Path:
        return self.archive_dir / f"{sanitize_project_name(project_name)}_{stamp}_{reason}.json"
