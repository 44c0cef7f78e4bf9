"""Rich logging utilities for controller output.

This module provides a consistent interface for every log record the
controller emits. Records go through the standard ``logging`` module and
are rendered on stderr by Rich.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

# Custom theme with consistent colors
_THEME = Theme(
    {
        "logging.level.info": "cyan",
        "logging.level.warning": "yellow",
        "logging.level.error": "red bold",
        "logging.level.debug": "dim",
    }
)

# Shared console instance
console = Console(theme=_THEME, stderr=True)

logger = logging.getLogger("workload_secrets")


def configure(*, debug: bool = False) -> None:
    """Attach the Rich handler to the package logger.

    Calling this more than once replaces the previously installed handler.

    Args:
        debug: If True, also emit debug records.

    """
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(console=console, markup=False, rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)


def debug(message: str) -> None:
    """Log a debug message.

    Args:
        message: The message to log.

    """
    logger.debug(message)


def info(message: str) -> None:
    """Log an informational message.

    Args:
        message: The message to log.

    """
    logger.info(f"ℹ {message}")


def success(message: str) -> None:
    """Log a success message.

    Args:
        message: The message to log.

    """
    logger.info(f"✓ {message}")


def warning(message: str) -> None:
    """Log a warning message.

    Args:
        message: The message to log.

    """
    logger.warning(f"⚠ {message}")


def error(message: str) -> None:
    """Log an error message.

    Args:
        message: The message to log.

    """
    logger.error(f"✗ {message}")


def exception(message: str) -> None:
    """Log an error message with the active exception's traceback.

    Must be called from inside an ``except`` block.

    Args:
        message: The message to log.

    """
    logger.exception(f"✗ {message}")
