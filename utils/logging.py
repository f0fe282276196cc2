# utils/logging.py

"""Logging setup for the orchestration layer."""

from __future__ import annotations

import logging
import logging.handlers
import os

import structlog
from rich.logging import RichHandler

from config import settings

logger = structlog.get_logger(__name__)

__all__ = ["setup_logging"]

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def _resolve_log_path(log_file: str) -> str:
    if os.path.isabs(log_file):
        return log_file
    return os.path.join(settings.BASE_OUTPUT_DIR, log_file)


def setup_logging(log_file: str | None = None, enable_rich: bool | None = None) -> None:
    """Configure structlog and standard logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(settings.LOG_LEVEL_STR)

    log_file = settings.LOG_FILE if log_file is None else log_file
    if log_file:
        file_path = _resolve_log_path(log_file)
        try:
            log_dir = os.path.dirname(file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                file_path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                mode="a",
                encoding="utf-8",
            )
        except OSError as e:
            logger.error("Error setting up file logger", path=file_path, error=str(e))
        else:
            file_handler.setFormatter(
                logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
            )
            root_logger.addHandler(file_handler)

    use_rich = settings.ENABLE_RICH_LOGGING if enable_rich is None else enable_rich
    if use_rich:
        root_logger.addHandler(
            RichHandler(
                level=settings.LOG_LEVEL_STR,
                rich_tracebacks=True,
                show_path=False,
                markup=False,
                show_time=True,
                show_level=True,
            )
        )
    else:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(
            logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
        )
        root_logger.addHandler(stream_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger().info(
        "Logging setup complete.",
        log_level=logging.getLevelName(root_logger.level),
        log_file=log_file or None,
    )
