"""Structured logging setup.

``LOG_FORMAT=json`` emits one JSON object per line for log shippers;
anything else renders human-readable console output. ``LOG_LEVEL`` sets the
threshold for both structlog and stdlib loggers.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def configure_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    log_format = (log_format or os.getenv("LOG_FORMAT", "console")).lower()
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    # Per-request access lines and client internals are too chatty at INFO
    for noisy in ("uvicorn.access", "httpx", "httpcore", "web3", "botocore", "urllib3"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
