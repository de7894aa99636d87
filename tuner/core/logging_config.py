"""Unified logging configuration for the tuner.

Every module logs through ``logging.getLogger(__name__)``; the CLI calls
``setup_logging`` once at startup to attach handlers to the package logger.

Usage:
    from tuner.core.logging_config import setup_logging

    logger = setup_logging("tuner", level="DEBUG", log_file="tuner.log")
"""

from __future__ import annotations

import logging
from pathlib import Path

__all__ = [
    "COMPACT_FORMAT",
    "DEFAULT_FORMAT",
    "DETAILED_FORMAT",
    "configure_third_party_loggers",
    "setup_logging",
]

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
COMPACT_FORMAT = "%(levelname)s: %(message)s"
DETAILED_FORMAT = (
    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty HTTP stacks used by the player and advisory clients
_THIRD_PARTY_LOGGERS = ("urllib3", "requests")


def _resolve_level(level: int | str) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        return resolved
    return level


def setup_logging(
    name: str = "tuner",
    level: int | str = logging.INFO,
    log_file: str | Path | None = None,
    console: bool = True,
    fmt: str = DEFAULT_FORMAT,
) -> logging.Logger:
    """Configure and return a named logger.

    Safe to call repeatedly: handlers are only attached once per logger,
    later calls just update the level.

    Args:
        name: Logger name, usually the top-level package
        level: Logging level as an int or a name such as "DEBUG"
        log_file: Optional file to append log records to
        console: Attach a stderr stream handler
        fmt: Record format string

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    formatter = logging.Formatter(fmt, datefmt=DATE_FORMAT)

    has_console = any(
        type(h) is logging.StreamHandler for h in logger.handlers
    )
    if console and not has_console:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if log_file is not None:
        log_path = Path(log_file).resolve()
        has_file = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename) == log_path
            for h in logger.handlers
        )
        if not has_file:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def configure_third_party_loggers(level: int | str = logging.WARNING) -> None:
    """Quiet HTTP client libraries below the given level."""
    resolved = _resolve_level(level)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(resolved)
