"""Structured logging for win2cloud."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

PACKAGE_LOGGER = "win2cloud"


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance.

    The rich handler is attached once, to the package logger, so that
    module loggers (``win2cloud.pipeline.build`` ...) share it and
    ``set_log_level`` governs all of them.
    """
    root = logging.getLogger(PACKAGE_LOGGER)

    if not root.handlers:
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter("%(message)s")
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG, INFO, WARNING, ERROR)."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    get_logger(PACKAGE_LOGGER).setLevel(numeric)
