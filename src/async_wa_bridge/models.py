# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic request models for the HTTP API.

Models:
    - SendMessagePayload: Outbound message through a session
    - AccountConfig: SMTP account supplied with an email request
    - EmailSendPayload: Outbound email
    - EmailTestPayload: Diagnostic email request

Validation failures raise ``ValueError`` with the message returned to the
caller; the API turns them into ``400`` responses.
"""

from __future__ import annotations

import re
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .email_service import EmailAccount, EmailRequest

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15


def _blank(value: str | None) -> bool:
    return value is None or value.strip() == ""


def is_valid_email(address: str) -> bool:
    return bool(EMAIL_RE.match(address or ""))


class SendMessagePayload(BaseModel):
    """Body of ``POST /send/{sessionId}``."""

    model_config = ConfigDict(populate_by_name=True)

    phone_number: str | None = Field(default=None, alias="phoneNumber")
    message: str | None = None

    @model_validator(mode="after")
    def check_fields(self) -> SendMessagePayload:
        if _blank(self.phone_number):
            raise ValueError("phoneNumber is required and cannot be empty")
        if _blank(self.message):
            raise ValueError("message is required and cannot be empty")
        digits = re.sub(r"\D", "", self.phone_number)
        if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
            raise ValueError(f"phoneNumber must contain {PHONE_MIN_DIGITS}-{PHONE_MAX_DIGITS} digits")
        return self


class AccountConfig(BaseModel):
    """SMTP account definition accepted inline with email requests."""

    model_config = ConfigDict(populate_by_name=True)

    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = Field(default=None, alias="pass")
    use_tls: bool = Field(default=True, alias="useTls")

    def to_account(self) -> EmailAccount:
        return EmailAccount(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            use_tls=self.use_tls,
        )


class EmailSendPayload(BaseModel):
    """Body of ``POST /email/send``."""

    model_config = ConfigDict(populate_by_name=True)

    account_config: AccountConfig | None = Field(default=None, alias="accountConfig")
    to: str | None = None
    subject: str | None = None
    text: str | None = None
    html: str | None = None
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)

    @field_validator("cc", "bcc", mode="before")
    @classmethod
    def split_addresses(cls, value: Union[list[str], str, None]) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def check_fields(self) -> EmailSendPayload:
        if _blank(self.to):
            raise ValueError("Recipient email address (to) is required")
        if _blank(self.subject):
            raise ValueError("Email subject is required")
        if not is_valid_email(self.to):
            raise ValueError("Invalid email format for recipient (to)")
        if _blank(self.text) and _blank(self.html):
            raise ValueError("At least one of text or html email body is required")
        return self

    def to_request(self) -> EmailRequest:
        return EmailRequest(
            to=self.to,
            subject=self.subject,
            text=self.text,
            html=self.html,
            cc=list(self.cc),
            bcc=list(self.bcc),
        )


class EmailTestPayload(BaseModel):
    """Optional body of ``POST /email/test``."""

    model_config = ConfigDict(populate_by_name=True)

    account_config: AccountConfig | None = Field(default=None, alias="accountConfig")


def first_error_message(errors: list[dict[str, Any]]) -> str:
    """Extract a caller-facing message from pydantic validation errors."""
    if not errors:
        return "Invalid request"
    error = errors[0]
    ctx = error.get("ctx") or {}
    if "error" in ctx:
        return str(ctx["error"])
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]
    message = error.get("msg", "Invalid request")
    return f"{'.'.join(loc)}: {message}" if loc else message
