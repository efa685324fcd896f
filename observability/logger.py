"""
observability/logger.py — SRSForge Structured Logger

structlog on top of stdlib logging. The rotating file under `log_dir` always
receives JSON; stderr gets either JSON or the coloured dev renderer. Every
line carries timestamp, level, logger name and, while a turn is running,
the session_id/project bound by bind_session().

Long string values (prompts, raw model replies) are capped at
`max_field_chars` so one verbose specialist cannot flood the log file.

Usage:
    from observability.logger import get_logger, setup_logging

    setup_logging(level="INFO", log_dir="./data/logs")   # once, at startup
    log = get_logger(__name__)
    log.info("specialist.iteration_start", specialist="fr_writer", iteration=2)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

DEFAULT_MAX_FIELD_CHARS = 2000


def _cap_long_fields(max_chars: int) -> structlog.types.Processor:
    def processor(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in event_dict.items():
            if key != "event" and isinstance(value, str) and len(value) > max_chars:
                event_dict[key] = value[:max_chars] + f"... [+{len(value) - max_chars} chars]"
        return event_dict
    return processor


def _formatter(renderer: Any, pre_chain: list[Any]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
    max_field_chars: int = DEFAULT_MAX_FIELD_CHARS,
) -> None:
    """
    Configure structlog and the root stdlib logger. Safe to call again
    (tests, config reload); handlers are replaced, not stacked.

    Args:
        level:           DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:         Directory for `srsforge.log` and its rotations.
        json_format:     Console renderer: JSON if True, coloured text if False.
        console_output:  Emit to stderr at all. The REPL owns stdout.
        max_bytes:       Rotation threshold per file.
        backup_count:    Rotated files to keep.
        max_field_chars: Cap for any single string value in an event.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _cap_long_fields(max_field_chars),
    ]

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / "srsforge.log",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_renderer = (
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(colors=True)
        )
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(_formatter(console_renderer, pre_chain))
        handlers.append(console_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)

    # Third-party HTTP chatter only at WARNING and above
    for noisy in ("openai", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "srsforge", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Logger named after the calling module, optionally pre-bound."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_session(session_id: str, project: str = "") -> None:
    """Attach session_id/project to every event of the current turn."""
    structlog.contextvars.bind_contextvars(session_id=session_id, project=project)


def clear_session() -> None:
    structlog.contextvars.clear_contextvars()
