"""
Logging configuration for the bulkde package.

This module sets up consistent logging across all analysis services,
making it easier to follow a pipeline run and debug failed fits.
"""

import logging
import sys


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       We detect this and let records propagate to root (single output).
    2. Library usage: no RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(level)

        from rich.logging import RichHandler

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            # Root's handler would print the same record a second time
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def set_log_level(level: str) -> None:
    """Set the level of every bulkde logger created so far."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("bulkde"):
            logging.getLogger(name).setLevel(numeric)
