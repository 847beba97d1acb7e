# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Python client for interacting with running bridge instances.

This module provides a synchronous interface over the bridge's HTTP API. It
is used by the ``wa-bridge`` CLI and works equally well from a REPL.

Usage in REPL:
    >>> from async_wa_bridge.client import BridgeClient
    >>> bridge = BridgeClient("http://localhost:8000", token="secret")
    >>> bridge.connect("shop-1")
    {'success': True, ...}
    >>> bridge.qr("shop-1").qr_code
    '2@AbC...'
    >>> bridge.send("shop-1", "391234567890", "hello")
    SendReceipt(message_id='3EB0...', to='391234567890')
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests


class BridgeClientError(Exception):
    """Raised when the bridge answers with an error payload."""

    def __init__(self, status_code: int, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after


@dataclass
class SessionInfo:
    """Represents a session as listed or reported by the bridge."""

    session_id: str
    status: str
    is_connected: bool = False
    phone_number: Optional[str] = None
    has_qr_code: bool = False
    exists: bool = True
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        """Create a SessionInfo from API response dict."""
        return cls(
            session_id=data["sessionId"],
            status=data.get("status", "unknown"),
            is_connected=bool(data.get("isConnected", False)),
            phone_number=data.get("phoneNumber"),
            has_qr_code=bool(data.get("hasQRCode", False)),
            exists=bool(data.get("exists", True)),
            last_error=data.get("lastError"),
        )

    def __repr__(self) -> str:
        return f"SessionInfo(id='{self.session_id}', status='{self.status}')"


@dataclass
class QRInfo:
    """Pairing code of a session; ``qr_code`` is None when nothing can be scanned."""

    session_id: str
    status: str
    qr_code: Optional[str] = None
    is_connected: bool = False
    phone_number: Optional[str] = None
    generated_at: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QRInfo":
        return cls(
            session_id=data["sessionId"],
            status=data.get("status", "unknown"),
            qr_code=data.get("qrCode"),
            is_connected=bool(data.get("isConnected", False)),
            phone_number=data.get("phoneNumber"),
            generated_at=data.get("qrGeneratedAt"),
            message=data.get("message"),
        )


@dataclass
class SendReceipt:
    message_id: str
    to: str
    jid: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SendReceipt":
        return cls(message_id=data["messageId"], to=data.get("to", ""), jid=data.get("jid"))

    def __repr__(self) -> str:
        return f"SendReceipt(message_id='{self.message_id}', to='{self.to}')"


class BridgeClient:
    """Synchronous client for a bridge instance.

    Example:
        >>> bridge = BridgeClient("http://localhost:8000", token="secret")
        >>> [s.session_id for s in bridge.sessions()]
        ['shop-1']
    """

    def __init__(self, url: str = "http://localhost:8000", token: Optional[str] = None, timeout: float = 30):
        """Initialize the client.

        Args:
            url: Base URL of the bridge server.
            token: API token for authentication.
            timeout: Per-request timeout in seconds.
        """
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        """Build request headers."""
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-API-Token"] = self.token
        return headers

    def _handle(self, resp: requests.Response) -> Any:
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400:
            message = None
            retry_after = None
            if isinstance(data, dict):
                message = data.get("error") or data.get("detail")
                retry_after = data.get("retryAfter")
            raise BridgeClientError(resp.status_code, str(message or resp.reason or resp.status_code), retry_after)
        return data

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make a GET request."""
        resp = requests.get(f"{self.url}{path}", headers=self._headers(), params=params, timeout=self.timeout)
        return self._handle(resp)

    def _post(self, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Make a POST request."""
        resp = requests.post(f"{self.url}{path}", headers=self._headers(), json=data or {}, timeout=self.timeout)
        return self._handle(resp)

    def _delete(self, path: str) -> Any:
        """Make a DELETE request."""
        resp = requests.delete(f"{self.url}{path}", headers=self._headers(), timeout=self.timeout)
        return self._handle(resp)

    # ------------------------------------------------------------- sessions
    def connect(self, session_id: str) -> Dict[str, Any]:
        """Start a session on the bridge."""
        return self._post(f"/connect/{session_id}")

    def qr(self, session_id: str) -> QRInfo:
        return QRInfo.from_dict(self._get(f"/qr/{session_id}"))

    def status(self, session_id: str) -> SessionInfo:
        """Get the status of a session; unknown sessions report ``exists=False``."""
        return SessionInfo.from_dict(self._get(f"/status/{session_id}"))

    def sessions(self) -> List[SessionInfo]:
        data = self._get("/sessions")
        return [SessionInfo.from_dict(s) for s in data.get("sessions", [])]

    def send(self, session_id: str, phone_number: str, message: str) -> SendReceipt:
        """Send a text message through a connected session."""
        data = self._post(f"/send/{session_id}", {"phoneNumber": phone_number, "message": message})
        return SendReceipt.from_dict(data)

    def disconnect(self, session_id: str) -> Dict[str, Any]:
        return self._delete(f"/disconnect/{session_id}")

    # ---------------------------------------------------------------- email
    def send_email(
        self,
        to: str,
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
        account_config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"to": to, "subject": subject}
        if text is not None:
            payload["text"] = text
        if html is not None:
            payload["html"] = html
        if account_config:
            payload["accountConfig"] = account_config
        return self._post("/email/send", payload)

    def email_test(self, account_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send the diagnostic email."""
        return self._post("/email/test", {"accountConfig": account_config} if account_config else {})

    # --------------------------------------------------------------- service
    def health(self) -> Dict[str, Any]:
        return self._get("/health")

    def is_healthy(self) -> bool:
        """Check if the server answers the health check."""
        try:
            return self.health().get("status") == "ok"
        except (requests.RequestException, BridgeClientError):
            return False

    def __repr__(self) -> str:
        return f"<BridgeClient {self.url}>"
