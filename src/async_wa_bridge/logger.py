# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the messaging bridge.

This module provides a centralized logging configuration helper. The actual
logging setup (level, handlers, format) is performed once by
:func:`configure_logging` in the entry point to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from async_wa_bridge.logger import get_logger

        logger = get_logger("Supervisor")
        logger.info("Session connected")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "WaBridge") -> logging.Logger:
    """Retrieve a logger instance.

    This function returns a standard library logger with the specified name.
    It does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "WaBridge".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the process.

    Unknown level names fall back to INFO. ``force=True`` replaces handlers
    installed by earlier calls (uvicorn reloads, tests).
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
