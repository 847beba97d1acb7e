# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that loads the
settings, builds the :class:`BridgeCore` and starts/stops it with the
application lifespan.

Usage:
    uvicorn async_wa_bridge.server:app --host 0.0.0.0 --port 8000

Environment variables:
    WAB_CONFIG: Path to the INI configuration file (default: config.ini)
    See :func:`async_wa_bridge.config.load_settings` for the full list.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from .api import create_app
from .config import load_settings
from .core import BridgeCore
from .logger import configure_logging, get_logger

_settings = load_settings()
configure_logging(_settings.log_level)
logger = get_logger("WaBridgeServer")

_core = BridgeCore(_settings)
_shutdown_requested = False


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Log an unhandled loop error and ask the process to shut down gracefully."""
    global _shutdown_requested
    exc = context.get("exception")
    logger.error("Unhandled error in event loop: %s", context.get("message"), exc_info=exc)
    if _shutdown_requested:
        return
    _shutdown_requested = True
    logger.error("Requesting graceful shutdown")
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the core service."""
    asyncio.get_running_loop().set_exception_handler(_handle_loop_exception)
    await _core.start()
    yield
    await _core.stop()


app = create_app(_core, api_token=_settings.api_token, lifespan=lifespan)
