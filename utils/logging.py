# utils/logging.py

"""Logging helpers for the Reader Panel."""

from __future__ import annotations

import logging
import logging.handlers
import os

import structlog
from config import settings
from rich.logging import RichHandler

logger = structlog.get_logger(__name__)


__all__ = ["setup_logging"]


def _log_file_path() -> str | None:
    if not settings.LOG_FILE:
        return None
    if os.path.isabs(settings.LOG_FILE):
        return settings.LOG_FILE
    return os.path.join(settings.BASE_OUTPUT_DIR, settings.LOG_FILE)


def setup_logging(level: str | None = None) -> None:
    """Configure structlog and standard logging for a run."""
    level_name = (level or settings.LOG_LEVEL_STR).upper()
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
    root_logger.setLevel(level_name)

    file_path = _log_file_path()
    if file_path:
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
            file_handler.setFormatter(
                logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
            )
            root_logger.addHandler(file_handler)
        except OSError as e:  # pragma: no cover - path issues
            logger.error(f"Error setting up file logger: {e}")

    if settings.ENABLE_RICH_PROGRESS:
        root_logger.addHandler(
            RichHandler(
                level=level_name,
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

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    structlog.get_logger().info("Reader Panel logging setup complete.", log_level=level_name)
