# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Boundary with the external messaging-network client library.

The wire protocol and the cryptographic handshake of the messaging network
are owned by an external client library. This module defines the narrow
interface the bridge expects from it:

- a :data:`TransportFactory` that opens one connection for a session,
  optionally reusing persisted credentials;
- a :class:`MessagingTransport` handle with a send primitive and teardown;
- the events the handle reports through the ``emit`` callback;
- the classification of transport status codes carried by close events.

Example:
    Plugging in a client library::

        async def open_transport(session_id, credentials, emit):
            client = SomeClient(credentials=credentials)
            client.on("qr", lambda token: emit(PairingCodeReceived(token)))
            client.on("open", lambda user: emit(ConnectionOpened(account_from_jid(user))))
            client.on("close", lambda code, reason: emit(ConnectionClosed(code, reason)))
            client.on("creds", lambda creds: emit(CredentialsUpdated(creds)))
            await client.start()
            return ClientAdapter(client)

    and configuring ``[transport] factory = mypackage.adapter:open_transport``.
"""

from __future__ import annotations

import asyncio
import importlib
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

import aiohttp

from .errors import TransportFailure

USER_JID_SUFFIX = "@s.whatsapp.net"


# ---------------------------------------------------------------- events
@dataclass(frozen=True)
class PairingCodeReceived:
    """A new pairing token is available for display."""

    token: str


@dataclass(frozen=True)
class ConnectionOpened:
    """The connection authenticated successfully."""

    account_id: str | None = None


@dataclass(frozen=True)
class ConnectionClosed:
    """The connection closed; ``status_code`` is the transport's reason code."""

    status_code: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class CredentialsUpdated:
    """The transport produced new credential material that must be persisted."""

    credentials: dict[str, Any] = field(default_factory=dict)


TransportEvent = Union[PairingCodeReceived, ConnectionOpened, ConnectionClosed, CredentialsUpdated]
EmitCallback = Callable[[TransportEvent], None]


# ---------------------------------------------------------------- handle
class MessagingTransport(ABC):
    """Live connection handle returned by a transport factory."""

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> str:
        """Send a text message and return the transport-assigned message id."""

    @abstractmethod
    async def logout(self) -> None:
        """Log out, invalidating the session's credentials on the remote end."""

    @abstractmethod
    def end(self) -> None:
        """Close the connection without logging out."""


TransportFactory = Callable[[str, Union[dict[str, Any], None], EmitCallback], Awaitable[MessagingTransport]]


def load_transport_factory(path: str) -> TransportFactory:
    """Resolve a ``package.module:callable`` import path to a transport factory.

    Raises:
        ValueError: If the path is malformed or does not name a callable.
        ImportError: If the module cannot be imported.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid transport factory path {path!r}; expected 'module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"Transport factory {path!r} is not callable")
    return factory


# -------------------------------------------------------- classification
class DisconnectClass(str, Enum):
    """Closed classification of transport close codes."""

    LOGOUT = "logout"
    RESTRICTED = "restricted"
    RECOVERABLE_STREAM = "recoverable_stream"
    RECOVERABLE_PRECONDITION = "recoverable_precondition"
    RECOVERABLE_RESTART = "recoverable_restart"
    UNKNOWN = "unknown"

    @property
    def recoverable(self) -> bool:
        return self in RECOVERABLE_CLASSES


RECOVERABLE_CLASSES = frozenset({
    DisconnectClass.RECOVERABLE_STREAM,
    DisconnectClass.RECOVERABLE_PRECONDITION,
    DisconnectClass.RECOVERABLE_RESTART,
})

DISCONNECT_CODES: dict[int, DisconnectClass] = {
    401: DisconnectClass.LOGOUT,
    403: DisconnectClass.RESTRICTED,
    404: DisconnectClass.RESTRICTED,
    500: DisconnectClass.RESTRICTED,
    428: DisconnectClass.RECOVERABLE_PRECONDITION,
    503: DisconnectClass.RECOVERABLE_RESTART,
    515: DisconnectClass.RECOVERABLE_STREAM,
}

DISCONNECT_LABELS: dict[DisconnectClass, str] = {
    DisconnectClass.LOGOUT: "Logged Out",
    DisconnectClass.RESTRICTED: "Account Restricted",
    DisconnectClass.RECOVERABLE_STREAM: "Stream Error",
    DisconnectClass.RECOVERABLE_PRECONDITION: "Precondition Required",
    DisconnectClass.RECOVERABLE_RESTART: "Restart Required",
    DisconnectClass.UNKNOWN: "Unknown",
}


def classify_disconnect(
    status_code: int | None,
    table: dict[int, DisconnectClass] | None = None,
) -> DisconnectClass:
    """Map a transport close code to its :class:`DisconnectClass`."""
    if status_code is None:
        return DisconnectClass.UNKNOWN
    try:
        code = int(status_code)
    except (TypeError, ValueError):
        return DisconnectClass.UNKNOWN
    return (table or DISCONNECT_CODES).get(code, DisconnectClass.UNKNOWN)


# -------------------------------------------------------------- addressing
def to_jid(phone_number: str) -> str:
    """Build a user JID from a phone number, keeping digits only."""
    digits = re.sub(r"\D", "", phone_number or "")
    return f"{digits}{USER_JID_SUFFIX}"


def account_from_jid(user_id: str | None) -> str | None:
    """Extract the phone number from a device JID such as ``391234:12@s.whatsapp.net``."""
    if not user_id:
        return None
    account = re.split(r"[:@]", user_id, maxsplit=1)[0]
    return account or None


# ------------------------------------------------------------ reachability
async def probe_reachability(url: str, timeout: float = 5.0) -> int:
    """Check that the messaging servers answer HTTP before opening a transport.

    Any HTTP status counts as reachable; only network errors and timeouts
    fail the probe.

    Returns:
        The HTTP status code received.

    Raises:
        TransportFailure: If the servers cannot be reached in time.
    """
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as http:
            async with http.get(url) as resp:
                return resp.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise TransportFailure(
            f"Cannot reach messaging servers at {url}. Check firewall/proxy/network. ({exc or type(exc).__name__})"
        ) from exc
