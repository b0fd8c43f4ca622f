"""Structured logging via structlog, to stderr and optionally an hourly rotating file."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler

import structlog
from structlog.typing import Processor

EVENTS_LOGGER = "fwdproxy.events"
LOG_FILE_NAME = "forward-proxy.log"
STDLIB_LOG_FILE_NAME = "stdlib.log"


def _hourly_handler(path: str, log_level: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        filename=path,
        when="H",
        interval=1,
        backupCount=168,  # 7 days of hourly logs
        utc=True,
    )
    handler.setLevel(log_level)
    return handler


class _TeeWriter:
    """Write rendered structlog lines to stderr and, if given, a stdlib logger."""

    def __init__(self, file_logger: logging.Logger | None = None) -> None:
        self._file_logger = file_logger

    def write(self, message: str) -> None:
        if self._file_logger is not None and message.strip():
            self._file_logger.info(message.rstrip("\n"))
        sys.stderr.write(message)

    def flush(self) -> None:
        sys.stderr.flush()


def _events_file_logger(log_dir: str) -> logging.Logger:
    """Stdlib logger that writes already-rendered lines to ``forward-proxy.log``."""
    events = logging.getLogger(EVENTS_LOGGER)
    for handler in events.handlers[:]:
        handler.close()
        events.removeHandler(handler)
    handler = _hourly_handler(os.path.join(log_dir, LOG_FILE_NAME), "DEBUG")  # structlog filters levels
    handler.setFormatter(logging.Formatter("%(message)s"))
    events.addHandler(handler)
    events.setLevel(logging.DEBUG)
    events.propagate = False
    return events


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_dir: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    ``log_format`` is "console" for human-readable lines or "json" for
    JSON lines. When ``log_dir`` is set, the same lines that go to stderr
    are written to ``<log_dir>/forward-proxy.log`` and stdlib records
    (asyncio internals) to ``stdlib.log`` next to it. Both files rotate
    hourly and keep a week of backups.
    """
    log_level = log_level.upper()

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addHandler(stderr_handler)

    file_logger = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        root_logger.addHandler(_hourly_handler(os.path.join(log_dir, STDLIB_LOG_FILE_NAME), log_level))
        file_logger = _events_file_logger(log_dir)

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=_TeeWriter(file_logger)),
        cache_logger_on_first_use=True,
    )
