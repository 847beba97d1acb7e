# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asynchronous multi-session messaging bridge with SMTP email relay.

This package keeps long-lived, authenticated connections to an external
messaging network on behalf of many independent sessions and exposes a
request/response API on top of them. Features include:

- Per-session connection supervision with an explicit reconnection state machine
- Pairing (QR code) lifecycle that survives transient network errors
- Sliding-window rate limiting for outbound messages and email
- SMTP relay for outbound email via aiosmtplib
- Prometheus metrics for monitoring
- FastAPI REST API for session control and message submission
- SQLite persistence for session credentials

Example:
    Basic usage with the FastAPI application::

        from async_wa_bridge.core import BridgeCore
        from async_wa_bridge.api import create_app

        core = BridgeCore(settings, transport_factory=my_factory)
        app = create_app(core, api_token="secret")
"""

__version__ = "0.1.0"
