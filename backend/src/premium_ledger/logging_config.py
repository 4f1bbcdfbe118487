"""Structured logging setup.

Call ``configure_logging()`` once per process (the CLI and the API factory
do). Modules take their logger with ``get_logger(__name__)`` at import
time; structlog resolves the configuration on first use.
"""

import logging
import sys

import structlog

from premium_ledger.settings import settings

# Chatty third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "apscheduler": logging.WARNING,
    "stripe": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


def build_processors(log_format: str) -> list:
    """Processor chain for ``console`` or ``json`` output."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
    ]
    if log_format == "json":
        processors += [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        processors += [
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=True),
            structlog.dev.ConsoleRenderer(),
        ]
    return processors


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Level name, defaults to ``settings.log_level``
        log_format: ``console`` or ``json``, defaults to ``settings.log_format``
    """
    level_name = (level or settings.log_level).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=build_processors(log_format or settings.log_format),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=settings.app_name, env=settings.env)

    logging.basicConfig(format="%(levelname)s %(name)s %(message)s", stream=sys.stdout, level=numeric_level)
    if numeric_level > logging.DEBUG:
        for name, quiet_level in QUIET_LOGGERS.items():
            logging.getLogger(name).setLevel(max(quiet_level, numeric_level))


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
