"""
structlog setup for the guard.

Every module logs UPPER_SNAKE event names with keyword context, e.g.
logger.warning("CLOSE_TRIGGERED", symbol="BTC", pnl_percent="-6.10").
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 5


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Route structlog through stdlib logging to stdout, plus a rotating file
    when log_file (or $LOG_FILE) is set.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" for production, "text" for a console renderer
        log_file: Optional path for the rotating file handler
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.contextvars.merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    log_file = log_file or os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_path, maxBytes=_LOG_FILE_MAX_BYTES, backupCount=_LOG_FILE_BACKUPS)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(handler)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
