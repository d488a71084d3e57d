"""
Logging configuration for the URCash license client.

Structured logging with JSON output for installed builds and
human-readable output for development.
"""

import logging
import sys
from typing import Optional

import structlog


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure structured logging for the license client.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, use JSON format. If False, use human-readable format.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(numeric_level)
    stderr_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(stderr_handler)

    processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance for a specific module.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        Structured logger instance.
    """
    return structlog.get_logger(name)


def mask_code(code: Optional[str], visible: int = 4) -> str:
    """Shorten an activation code to a loggable prefix."""
    if not code:
        return ""
    return f"{code[:visible]}..."
