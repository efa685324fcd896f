"""
brain/error_classifier.py — Model Failure Taxonomy

Pure, total mapping from a raw model failure (message + optional code)
to an ErrorClassification. Rules are evaluated top to bottom; the first
match wins and the last rule is the catch-all.

    network        retryable  3
    server (500)   retryable  1
    auth (401/429) terminal   0
    output_limit   retryable  3
    config         terminal   0   caller must shrink the request
    unknown        retryable  2
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Union

from pydantic import BaseModel, ConfigDict


class ErrorCategory(str, Enum):
    NETWORK = "network"
    SERVER = "server"
    AUTH = "auth"
    CONFIG = "config"
    OUTPUT_LIMIT = "output_limit"
    UNKNOWN = "unknown"


class ErrorClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    retryable: bool
    max_retries: int
    user_message: str


# ── Match predicates ──────────────────────────────────────────────────────────

_NETWORK_MARKERS = (
    "net::err_network_changed",
    "err_network_changed",
    "network changed",
    "econnrefused",
    "connection refused",
    "econnreset",
    "connection reset",
    "etimedout",
    "timed out",
    "socket hang up",
    "network",
)


def _is_network(msg: str, code: Optional[str]) -> bool:
    return any(marker in msg for marker in _NETWORK_MARKERS)


def _is_server(msg: str, code: Optional[str]) -> bool:
    return code == "500"


def _is_auth(msg: str, code: Optional[str]) -> bool:
    return code in ("401", "429")


def _is_output_limit(msg: str, code: Optional[str]) -> bool:
    return "response too long" in msg


def _is_config(msg: str, code: Optional[str]) -> bool:
    return (
        "token limit" in msg
        or ("exceeds" in msg and "limit" in msg)
        or "context length" in msg
    )


_Rule = tuple[Callable[[str, Optional[str]], bool], ErrorClassification]

_RULES: list[_Rule] = [
    (_is_network, ErrorClassification(
        category=ErrorCategory.NETWORK, retryable=True, max_retries=3,
        user_message="Network connection problem. Retrying automatically.",
    )),
    (_is_server, ErrorClassification(
        category=ErrorCategory.SERVER, retryable=True, max_retries=1,
        user_message="The model service returned a server error. Retrying once.",
    )),
    (_is_auth, ErrorClassification(
        category=ErrorCategory.AUTH, retryable=False, max_retries=0,
        user_message=(
            "The model service rejected the request (authentication or rate limit). "
            "Check your API key and quota."
        ),
    )),
    (_is_output_limit, ErrorClassification(
        category=ErrorCategory.OUTPUT_LIMIT, retryable=True, max_retries=3,
        user_message="The reply was too long. Asking the specialist to work in smaller steps.",
    )),
    (_is_config, ErrorClassification(
        category=ErrorCategory.CONFIG, retryable=False, max_retries=0,
        user_message=(
            "The request exceeded the model's context or token limit. "
            "Split the task into smaller pieces."
        ),
    )),
]

_DEFAULT = ErrorClassification(
    category=ErrorCategory.UNKNOWN, retryable=True, max_retries=2,
    user_message="An unexpected model error occurred. Retrying.",
)


def classify(error: Union[BaseException, str], code: Optional[str] = None) -> ErrorClassification:
    """
    Classify a model failure.

    `error` may be an exception or a bare message. When `code` is not given
    it is read from the exception's `code` attribute (ModelTransportError
    carries one), falling back to `status_code`.
    """
    if isinstance(error, BaseException):
        message = str(error)
        if code is None:
            raw = getattr(error, "code", None)
            if raw is None:
                raw = getattr(error, "status_code", None)
            code = str(raw) if raw is not None else None
    else:
        message = error

    normalised = (message or "").lower()
    for matches, classification in _RULES:
        if matches(normalised, code):
            return classification
    return _DEFAULT
