"""Structured logging setup.

Log lines go to stderr, or to ``logging.file`` when one is configured so they
do not interleave with the interactive console. Every line carries the
session id once ``bind_session`` has been called.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from helmsman.config import get_config

# Libraries that log every request at INFO.
_NOISY_LIBRARIES = ("httpx", "httpcore", "mcp", "aiosqlite")

_log_file: TextIO | None = None


def _open_log_file(path: str) -> TextIO:
    global _log_file
    if _log_file is not None and not _log_file.closed:
        _log_file.close()
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    _log_file = target.open("a", encoding="utf-8")
    return _log_file


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Overrides ``logging.level`` (the CLI passes DEBUG for -v)
        log_file: Overrides ``logging.file``
    """
    config = get_config().logging
    level_name = (level or config.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    path = log_file if log_file is not None else config.file
    output = _open_log_file(path) if path else sys.stderr

    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=output is sys.stderr and sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def bind_session(session_id: str) -> None:
    structlog.contextvars.bind_contextvars(session_id=session_id)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
