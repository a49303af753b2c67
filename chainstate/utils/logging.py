"""
Logging configuration for chainstate.

Provides structured, colorized console output and optional file logging
for the graph store, recovery engine, and coordinator.
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

_ROOT_LOGGER = "chainstate"

# Module-level logger cache
_loggers: dict[str, logging.Logger] = {}


# ============================================================================
# Custom Formatter
# ============================================================================


class ChainStateFormatter(logging.Formatter):
    """Formatter with level colors and a shortened logger name."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        use_colors: bool = True,
        include_timestamp: bool = True,
    ):
        self.use_colors = use_colors
        self.include_timestamp = include_timestamp
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        parts = []

        if self.include_timestamp:
            timestamp = datetime.fromtimestamp(record.created, UTC).strftime(
                "%Y-%m-%d %H:%M:%S"
            )
            parts.append(f"[{timestamp}]")

        level = record.levelname
        if self.use_colors:
            color = self.COLORS.get(level, "")
            parts.append(f"{color}{level:8}{self.COLORS['RESET']}")
        else:
            parts.append(f"{level:8}")

        name = record.name
        prefix = f"{_ROOT_LOGGER}."
        if name.startswith(prefix):
            name = name[len(prefix):]
        parts.append(f"[{name:24}]")

        parts.append(record.getMessage())

        if record.exc_info:
            parts.append(self.formatException(record.exc_info))

        return " ".join(parts)


# ============================================================================
# Setup Functions
# ============================================================================


def setup_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    log_dir: str | Path | None = None,
    console_output: bool = True,
    file_output: bool = True,
    log_filename: str = "chainstate.log",
) -> None:
    """Configure the ``chainstate`` logger hierarchy.

    Args:
        level: Minimum log level to capture
        log_dir: Directory for log files (required if file_output=True)
        console_output: Whether to log to stderr
        file_output: Whether to log to a file under ``log_dir``
        log_filename: Name of the log file
    """
    root_logger = logging.getLogger(_ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers = []

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, level))
        console_handler.setFormatter(ChainStateFormatter(use_colors=sys.stderr.isatty()))
        root_logger.addHandler(console_handler)

    if file_output and log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path / log_filename, encoding="utf-8")
        file_handler.setLevel(getattr(logging, level))
        file_handler.setFormatter(ChainStateFormatter(use_colors=False))
        root_logger.addHandler(file_handler)

    root_logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Get or create a logger under the ``chainstate.`` namespace.

    Usage:
        logger = get_logger("graph.store")
        logger.info("Entity added")
    """
    if name == _ROOT_LOGGER or name.startswith(f"{_ROOT_LOGGER}."):
        full_name = name
    else:
        full_name = f"{_ROOT_LOGGER}.{name}"

    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)

    return _loggers[full_name]


# ============================================================================
# Convenience Functions
# ============================================================================


def log_operation(
    logger: logging.Logger,
    operation: str,
    details: dict | None = None,
) -> None:
    """Log an operation at info level with ``key=value`` details."""
    if details:
        detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
        logger.info(f"{operation}: {detail_str}")
    else:
        logger.info(operation)


def log_error(
    logger: logging.Logger,
    operation: str,
    error: BaseException,
    context: dict | None = None,
) -> None:
    """Log a failed operation with its exception and optional context."""
    msg = f"FAILED {operation}: {type(error).__name__}: {error}"
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items())
        msg = f"{msg} | Context: {context_str}"
    logger.error(msg, exc_info=error)
