"""
agent/recovery.py — Recoverability Policy

A failure is either an "active" failure that retrying cannot fix
(validation, malformed JSON, permission, explicit user cancellation) or
anything else, which defaults to recoverable.

Typed exceptions map to a FailureKind directly. Untyped errors (plain
OSError, ValueError from third-party code, bare strings) fall back to a
closed list of message markers.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Optional, Union

from pydantic import ValidationError

from agent.types import SpecialistOutcome, SpecialistResult
from exceptions import (
    ActionParseError,
    CancelledByUserError,
    ConfigError,
    EmptyResponseError,
    ModelTransportError,
    ToolExecutionError,
)


class FailureKind(str, Enum):
    VALIDATION = "validation"
    MALFORMED_JSON = "malformed_json"
    PERMISSION = "permission"
    USER_CANCELLED = "user_cancelled"
    TRANSPORT = "transport"
    EMPTY_RESPONSE = "empty_response"
    TOOL = "tool"
    UNKNOWN = "unknown"


NON_RECOVERABLE = frozenset({
    FailureKind.VALIDATION,
    FailureKind.MALFORMED_JSON,
    FailureKind.PERMISSION,
    FailureKind.USER_CANCELLED,
})

# Order matters: the first matching marker wins
_MESSAGE_MARKERS: list[tuple[FailureKind, tuple[str, ...]]] = [
    (FailureKind.USER_CANCELLED, ("cancelled by user", "canceled by user", "user cancelled", "aborted by user")),
    (FailureKind.PERMISSION, ("permission denied", "eacces", "eperm", "operation not permitted", "access denied")),
    (FailureKind.MALFORMED_JSON, ("malformed json", "invalid json", "unexpected token", "json parse", "jsondecodeerror")),
    (FailureKind.VALIDATION, ("validation error", "validation failed", "invalid argument", "schema")),
]

_TYPED: list[tuple[type[BaseException], FailureKind]] = [
    (CancelledByUserError, FailureKind.USER_CANCELLED),
    (PermissionError, FailureKind.PERMISSION),
    (ActionParseError, FailureKind.MALFORMED_JSON),
    (json.JSONDecodeError, FailureKind.MALFORMED_JSON),
    (ValidationError, FailureKind.VALIDATION),
    (ConfigError, FailureKind.VALIDATION),
    (EmptyResponseError, FailureKind.EMPTY_RESPONSE),
    (ModelTransportError, FailureKind.TRANSPORT),
    (ToolExecutionError, FailureKind.TOOL),
]


def kind_from_message(message: str) -> FailureKind:
    lowered = message.lower()
    for kind, markers in _MESSAGE_MARKERS:
        if any(m in lowered for m in markers):
            return kind
    return FailureKind.UNKNOWN


def failure_kind(error: Union[BaseException, str]) -> FailureKind:
    """Typed exceptions first, message markers for everything else."""
    if isinstance(error, str):
        return kind_from_message(error)
    explicit = getattr(error, "failure_kind", None)
    if isinstance(explicit, FailureKind):
        return explicit
    for exc_type, kind in _TYPED:
        if isinstance(error, exc_type):
            return kind
    return kind_from_message(str(error))


def is_recoverable(error: Union[BaseException, str]) -> bool:
    return failure_kind(error) not in NON_RECOVERABLE


def result_failure_kind(result: SpecialistResult) -> Optional[FailureKind]:
    """FailureKind of a specialist result, or None if it succeeded."""
    if result.success:
        return None
    if result.outcome == SpecialistOutcome.CANCELLED:
        return FailureKind.USER_CANCELLED
    if result.error_category == "empty_response":
        return FailureKind.EMPTY_RESPONSE
    if result.error_category in {"network", "server", "auth", "config", "output_limit"}:
        return FailureKind.TRANSPORT
    return kind_from_message(result.error or "")
