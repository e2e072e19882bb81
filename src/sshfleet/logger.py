"""Logging types and utilities for sshfleet."""

from __future__ import annotations

import logging
import socket
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

__all__ = [
    "LogLevel",
    "configure_logging",
    "default_log_path",
    "get_logger",
    "parse_log_level",
]


class LogLevel(IntEnum):
    """Logging levels for sshfleet operations.

    Uses integer values compatible with standard logging levels,
    with custom FULL level between DEBUG and INFO for per-chunk detail.
    """

    DEBUG = logging.DEBUG
    FULL = logging.DEBUG + 5  # Custom level between DEBUG and INFO
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


# Register custom FULL log level with Python's logging module
logging.addLevelName(LogLevel.FULL, "FULL")


def parse_log_level(value: str) -> LogLevel:
    """Parse a log level name (case-insensitive) to LogLevel.

    Raises:
        ValueError: If the name is not a known level
    """
    try:
        return LogLevel[value.upper()]
    except KeyError as e:
        valid_levels = ", ".join(level.name for level in LogLevel)
        raise ValueError(f"Invalid log level: {value}. Valid levels: {valid_levels}") from e


def _add_local_hostname(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add the controlling machine's hostname; ``host`` is reserved for the remote end."""
    if "local_hostname" not in event_dict:
        event_dict["local_hostname"] = socket.gethostname()
    return event_dict


def configure_logging(
    log_file_level: LogLevel,
    log_cli_level: LogLevel,
    log_file_path: Path | None = None,
) -> None:
    """Configure structlog with terminal output and optional JSON file output.

    Args:
        log_file_level: Minimum level for file logging
        log_cli_level: Minimum level for terminal display
        log_file_path: Path to log file, or None to log to the terminal only
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_local_hostname,
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_cli_level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=True),
            foreign_pre_chain=shared_processors,
        )
    )
    handlers: list[logging.Handler] = [console_handler]
    level = log_cli_level

    if log_file_path is not None:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path)
        file_handler.setLevel(log_file_level)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        handlers.append(file_handler)
        level = min(log_file_level, log_cli_level)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # asyncssh logs every channel open/close at INFO
    logging.getLogger("asyncssh").setLevel(max(LogLevel.WARNING, level))


def get_logger(name: str, **context: Any) -> structlog.stdlib.BoundLogger:
    """Get a logger with bound context.

    Args:
        name: Logger name (typically "sshfleet.<module>")
        **context: Additional context to bind (e.g., host)

    Returns:
        BoundLogger with context
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def default_log_path(timestamp: datetime | None = None) -> Path:
    """Create log file path in ~/.local/share/sshfleet/logs/run-<timestamp>.log."""
    if timestamp is None:
        timestamp = datetime.now()

    log_dir = Path.home() / ".local" / "share" / "sshfleet" / "logs"
    return log_dir / f"run-{timestamp.strftime('%Y%m%d-%H%M%S')}.log"
