# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the messaging bridge.

This module provides the REST API interface of the bridge:

- Session lifecycle: connect, QR polling, status, disconnect, listing
- Outbound messages through a connected session
- Outbound email through the default or an inline SMTP account
- Health check and Prometheus metrics exposure
- Authentication via API token in the X-API-Token header

Every :class:`~async_wa_bridge.errors.BridgeError` raised by a handler is
turned into ``{"success": false, "error": ...}`` with the error's HTTP status;
rate-limit rejections also carry ``retryAfter`` in whole seconds.

Example:
    Creating and running the API application::

        from async_wa_bridge.core import BridgeCore
        from async_wa_bridge.api import create_app

        core = BridgeCore(load_settings())
        app = create_app(core, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import AsyncContextManager, Callable, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader

from .core import BridgeCore
from .errors import BridgeError, RateLimitExceeded, ValidationError
from .models import EmailSendPayload, EmailTestPayload, SendMessagePayload, first_error_message
from .session import NOT_INITIALIZED, QR_EXPIRED, to_iso

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: Optional[str] = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def create_app(
    core: BridgeCore,
    api_token: Optional[str] = None,
    lifespan: Optional[Callable[[FastAPI], AsyncContextManager]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    core:
        :class:`~async_wa_bridge.core.BridgeCore` serving every request.
    api_token:
        Optional secret protecting every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    api = FastAPI(title="Async WhatsApp Bridge", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.core = core
    router = APIRouter(dependencies=[auth_dependency])
    email_router = APIRouter(prefix="/email", tags=["email"], dependencies=[auth_dependency])
    supervisor = core.supervisor
    ttl = supervisor.policy.pairing_ttl

    @api.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        content = {"success": False, "error": exc.message}
        headers = None
        if isinstance(exc, RateLimitExceeded):
            content["retryAfter"] = exc.retry_after_seconds
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Return the first validation message as a ``400`` error."""
        message = first_error_message(exc.errors())
        logger.warning("Validation error on %s %s: %s", request.method, request.url.path, message)
        return await bridge_error_handler(request, ValidationError(message))

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return core.health()

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics in text exposition format."""
        return Response(content=core.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/connect/{session_id}")
    async def connect(session_id: str):
        """Start a session; pairing and authentication continue in the background."""
        logger.info("Initializing session %s", session_id)
        await supervisor.connect(session_id)
        return {
            "success": True,
            "message": "WhatsApp connection initiated. Please wait for QR code.",
            "sessionId": session_id,
            "instructions": f"Check QR code at: GET /qr/{session_id}",
        }

    @router.get("/qr/{session_id}")
    async def qr(session_id: str):
        """Return the current pairing code of a session, if any."""
        view = supervisor.get(session_id)
        if view is None:
            return JSONResponse(
                status_code=404,
                content={
                    "success": False,
                    "error": "Session not found. Please initialize first.",
                    "sessionId": session_id,
                },
            )
        payload = {
            "success": True,
            "sessionId": session_id,
            "qrCode": view.qr_code,
            "status": view.status.value,
            "isConnected": view.is_connected,
            "phoneNumber": view.account_id,
            "qrGeneratedAt": to_iso(view.qr_generated_at),
        }
        if view.qr_expired(supervisor.now(), ttl):
            payload.update(qrCode=None, status=QR_EXPIRED, message="QR code expired. Please reconnect.")
        return payload

    @router.get("/status/{session_id}")
    async def session_status(session_id: str):
        """Return the status of a session; unknown sessions are reported, not rejected."""
        view = supervisor.get(session_id)
        if view is None:
            return {
                "success": True,
                "sessionId": session_id,
                "exists": False,
                "status": NOT_INITIALIZED,
                "isConnected": False,
                "phoneNumber": None,
                "hasQRCode": False,
            }
        return {
            "success": True,
            "sessionId": session_id,
            "exists": True,
            "status": view.status.value,
            "isConnected": view.is_connected,
            "phoneNumber": view.account_id,
            "hasQRCode": view.has_qr_code,
            "lastError": view.last_error,
        }

    @router.post("/send/{session_id}")
    async def send(session_id: str, payload: SendMessagePayload):
        """Send a text message through a connected session."""
        result = await core.dispatcher.send_message(session_id, payload.phone_number, payload.message)
        return {"success": True, **result.to_dict()}

    @router.delete("/disconnect/{session_id}")
    async def disconnect(session_id: str):
        """Log out and forget a session. Succeeds for unknown sessions too."""
        removed = await supervisor.disconnect(session_id)
        message = "Session disconnected and cleaned up" if removed else "Session not found or already disconnected"
        return {"success": True, "message": message, "sessionId": session_id}

    @router.get("/sessions")
    async def sessions():
        """List every registered session."""
        summaries = [view.to_summary() for view in supervisor.views()]
        return {"success": True, "count": len(summaries), "sessions": summaries}

    @email_router.get("")
    async def email_info():
        """Describe the email API."""
        return {
            "service": "Email API",
            "version": "1.0.0",
            "endpoints": {
                "POST /email/send": "Send an email",
                "POST /email/test": "Send a test email to configured SMTP user",
            },
            "status": "active" if core.email.is_configured else "unconfigured",
        }

    @email_router.post("/send")
    async def email_send(payload: EmailSendPayload):
        """Relay an email through the inline or default SMTP account."""
        account = payload.account_config.to_account() if payload.account_config else None
        result = await core.email.send(payload.to_request(), account)
        return result.to_dict()

    @email_router.post("/test")
    async def email_test(payload: Optional[EmailTestPayload] = None):
        """Send a diagnostic email to the account's own address."""
        account = payload.account_config.to_account() if payload and payload.account_config else None
        result = await core.email.send_test(account)
        return {"success": True, "message": "Test email sent successfully", "messageId": result.message_id}

    api.include_router(router)
    api.include_router(email_router)
    return api
