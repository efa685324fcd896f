"""
exceptions.py — SRSForge Unified Error Hierarchy

All SRSForge-specific exceptions live here. Every layer of the stack
raises typed subclasses of SRSForgeError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import UnknownSpecialistError, SessionIOError

Hierarchy:
    SRSForgeError
    ├── ProgrammerError
    │   └── UnknownSpecialistError
    ├── ModelTransportError
    ├── EmptyResponseError
    ├── ActionParseError
    ├── ToolExecutionError
    ├── PromptAssemblyError
    ├── SessionIOError
    ├── PlanError
    ├── ConfigError
    └── CancelledByUserError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class SRSForgeError(Exception):
    """Base class for all SRSForge exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Programmer errors (fatal, always raised)
# ─────────────────────────────────────────────────────────────────────────────

class ProgrammerError(SRSForgeError):
    """A caller violated a contract. Never retried, never swallowed."""


class UnknownSpecialistError(ProgrammerError):
    """Specialist id is not in the registry, or is registered but disabled."""

    def __init__(self, specialist_id: str, message: str = "") -> None:
        self.specialist_id = specialist_id
        super().__init__(message or f"Unknown specialist: '{specialist_id}'")


# ─────────────────────────────────────────────────────────────────────────────
# Model layer
# ─────────────────────────────────────────────────────────────────────────────

class ModelTransportError(SRSForgeError):
    """
    Raised by a LanguageModel instead of returning text.

    `code` is the optional machine-readable code ("401", "429", "500", ...)
    the ErrorClassifier keys on.
    """

    def __init__(self, message: str, code: Optional[str] = None, provider: str = "") -> None:
        super().__init__(message)
        self.code = str(code) if code is not None else None
        self.provider = provider


class EmptyResponseError(SRSForgeError):
    """The model returned text that is empty after trimming."""


class ActionParseError(SRSForgeError):
    """Model output was not exactly one structured action."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


# ─────────────────────────────────────────────────────────────────────────────
# Tool / prompt layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolExecutionError(SRSForgeError):
    """A tool failed. Fed back to the specialist, never escalated."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' failed: {message}")


class PromptAssemblyError(SRSForgeError):
    """Prompt could not be rendered (missing template, unreadable file)."""


# ─────────────────────────────────────────────────────────────────────────────
# Session / orchestration layer
# ─────────────────────────────────────────────────────────────────────────────

class SessionIOError(SRSForgeError):
    """Session persistence failed after all write retries."""


class PlanError(SRSForgeError):
    """Failed to produce a valid plan for the given task."""


class ConfigError(SRSForgeError):
    """Raised by Settings.validate_all() when config problems are found."""


class CancelledByUserError(SRSForgeError):
    """The user explicitly cancelled the running task."""


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "SRSForgeError",
    "ProgrammerError",
    "UnknownSpecialistError",
    "ModelTransportError",
    "EmptyResponseError",
    "ActionParseError",
    "ToolExecutionError",
    "PromptAssemblyError",
    "SessionIOError",
    "PlanError",
    "ConfigError",
    "CancelledByUserError",
]
