# =============================================================================
# LOGGER - Logging Configuration
# =============================================================================
# Configurable logging for the polystore package.
# =============================================================================

from __future__ import annotations
import logging
import sys
from typing import Optional

from polystore.core.settings import settings

DEFAULT_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def setup_logger(
    name: str = "polystore",
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup and configure the package logger.

    Module loggers (``polystore.*``) propagate to it, so configuring
    the root ``polystore`` logger once covers every adapter.

    Args:
        name: Logger name
        level: Log level, defaults to settings.LOG_LEVEL
        format_string: Custom format string
        log_file: Optional file to write logs to

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    level = (level or settings.LOG_LEVEL).upper()
    logger.setLevel(getattr(logging, level, logging.INFO))

    # Clear existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = "polystore") -> logging.Logger:
    """
    Get a logger by name.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
