"""Structured logging singleton.

realm is an interactive CLI, so logs are quiet by default (WARNING) and go
to stderr, leaving stdout to command output (``realm list``, ``realm path``).

The initial level comes from ``REALM_LOG_LEVEL`` (or ``LOG_LEVEL``), read
straight from the environment so logging works before Settings are loaded.
The CLI raises or lowers it afterwards via :func:`set_level`.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_DEFAULT_LEVEL = "WARNING"


def _level_from_env() -> int:
    name = os.environ.get("REALM_LOG_LEVEL") or os.environ.get("LOG_LEVEL") or _DEFAULT_LEVEL
    return getattr(logging, name.upper(), logging.WARNING)


def _setup_logging() -> structlog.stdlib.BoundLogger:
    # stdlib root logger first so structlog's filter_by_level sees the level
    logging.basicConfig(level=_level_from_env(), format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("realm")


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Apply a log level chosen after startup (config file or ``-v``)."""
    level = getattr(logging, level_name.upper(), None)
    if isinstance(level, int):
        logging.getLogger().setLevel(level)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
