# core/logging_config.py
"""Configure ChapterForge logging sinks and formatting.

This module configures:
- A rotating file handler when `LOG_FILE` is set.
- A Rich console handler when `ENABLE_RICH_PROGRESS` is on, otherwise a plain
  stream handler.
- Baseline log level overrides for noisy third-party libraries.

Call `setup_logging()` once at process startup.
"""

from __future__ import annotations

import logging as stdlib_logging
import logging.handlers
import os

import structlog
from rich.console import Console
from rich.logging import RichHandler

import config
from config import rich_formatter, simple_formatter

NOISY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "neo4j", "neo4j.notifications")


def _file_handler() -> stdlib_logging.Handler | None:
    log_file = config.settings.LOG_FILE
    if not log_file:
        return None
    log_path = os.path.join(config.settings.BASE_OUTPUT_DIR, log_file)
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    handler = stdlib_logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        mode="a",
        encoding="utf-8",
    )
    handler.setLevel(config.settings.LOG_LEVEL_STR)
    handler.setFormatter(simple_formatter)
    return handler


def _console_handler(console: Console | None = None) -> stdlib_logging.Handler:
    level = config.settings.LOG_LEVEL_STR
    if config.settings.ENABLE_RICH_PROGRESS and not config.settings.SIMPLE_LOGGING_MODE:
        rich_handler = RichHandler(
            level=level,
            rich_tracebacks=True,
            show_path=False,
            markup=True,
            show_time=False,  # timestamp comes from the formatter
            show_level=False,
            console=console,
        )
        rich_handler.setFormatter(rich_formatter)
        return rich_handler

    stream_handler = stdlib_logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(simple_formatter)
    return stream_handler


def setup_logging(console: Console | None = None) -> None:
    """Replace the root handlers with the configured file and console sinks."""
    root_logger = stdlib_logging.getLogger()
    root_logger.setLevel(config.settings.LOG_LEVEL_STR)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if not config.settings.SIMPLE_LOGGING_MODE:
        try:
            file_handler = _file_handler()
        except OSError as e:
            file_handler = None
            root_logger.addHandler(_console_handler(console))
            root_logger.error(f"Failed to configure file logging: {e}. Logging to console only.")
        if file_handler is not None:
            root_logger.addHandler(file_handler)

    if not any(
        isinstance(h, stdlib_logging.StreamHandler) and not isinstance(h, stdlib_logging.FileHandler)
        for h in root_logger.handlers
    ) and not any(isinstance(h, RichHandler) for h in root_logger.handlers):
        root_logger.addHandler(_console_handler(console))

    for name in NOISY_LOGGERS:
        stdlib_logging.getLogger(name).setLevel(stdlib_logging.WARNING)

    structlog.get_logger(__name__).info(
        "ChapterForge logging configured",
        level=stdlib_logging.getLevelName(root_logger.level),
        handlers=[type(h).__name__ for h in root_logger.handlers],
    )
