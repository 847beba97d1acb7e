# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loading from an INI file with ``WAB_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .policy import RecoveryPolicy
from .rate_limit import DEFAULT_EMAIL_LIMIT, DEFAULT_MESSAGE_LIMIT

DEFAULT_PROBE_URL = "https://web.whatsapp.com"
DEFAULT_SHUTDOWN_TIMEOUT = 10.0


@dataclass
class BridgeSettings:
    """Resolved runtime settings of the bridge."""

    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None
    db_path: str = "/data/wa_bridge.db"
    transport_factory: str | None = None
    probe_url: str | None = DEFAULT_PROBE_URL
    connect_timeout: float = 20.0
    print_qr: bool = False
    restore_sessions: bool = False
    recovery: RecoveryPolicy = field(default_factory=RecoveryPolicy)
    message_max: int = DEFAULT_MESSAGE_LIMIT[0]
    message_window: float = DEFAULT_MESSAGE_LIMIT[1]
    email_max: int = DEFAULT_EMAIL_LIMIT[0]
    email_window: float = DEFAULT_EMAIL_LIMIT[1]
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_pool_ttl: int = 300
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    log_level: str = "INFO"


def load_settings(config_path: str | os.PathLike | None = None) -> BridgeSettings:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with WAB_):
      WAB_CONFIG - Path to config.ini file (default: config.ini)
      WAB_LOG_LEVEL - Logging level (default: INFO)
      WAB_HOST, WAB_PORT, WAB_API_TOKEN - HTTP server
      WAB_DB_PATH - Credential database path (default: /data/wa_bridge.db)
      WAB_TRANSPORT_FACTORY - Transport factory import path (module:callable)
      WAB_PROBE_URL - Reachability probe URL; empty disables the probe
      WAB_CONNECT_TIMEOUT - Transport connect timeout in seconds
      WAB_PRINT_QR - Log pairing codes as terminal QR codes (default: False)
      WAB_RESTORE_SESSIONS - Reconnect stored sessions at startup (default: False)
      WAB_PAIRING_TTL - Pairing code lifetime in seconds (default: 180)
      WAB_RECOVERY_PAIRED_DELAY, WAB_RECOVERY_EXPIRED_DELAY, WAB_RECOVERY_NETWORK_DELAY,
      WAB_RECOVERY_MAX_ATTEMPTS, WAB_RECOVERY_MAX_DELAY - Recovery policy
      WAB_MESSAGE_MAX, WAB_MESSAGE_WINDOW, WAB_EMAIL_MAX, WAB_EMAIL_WINDOW - Rate limits
      WAB_SMTP_HOST, WAB_SMTP_PORT, WAB_SMTP_USER, WAB_SMTP_PASSWORD, WAB_SMTP_USE_TLS,
      WAB_SMTP_POOL_TTL - Default SMTP account
      WAB_SHUTDOWN_TIMEOUT - Bound on graceful teardown in seconds (default: 10)

    Config file sections/keys:
      [server] host, port, api_token
      [storage] db_path
      [transport] factory, probe_url, connect_timeout, print_qr, restore_sessions
      [pairing] ttl_seconds
      [recovery] paired_delay, expired_pairing_delay, network_delay, max_attempts, max_delay
      [limits] message_max, message_window, email_max, email_window
      [smtp] host, port, user, password, use_tls, pool_ttl
      [shutdown] timeout
      [logging] level
    """
    path = Path(config_path or os.getenv("WAB_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    defaults = BridgeSettings()
    base_policy = defaults.recovery
    recovery = RecoveryPolicy(
        paired_delay=get_float(
            "recovery", "paired_delay", os.getenv("WAB_RECOVERY_PAIRED_DELAY"), base_policy.paired_delay
        ),
        expired_pairing_delay=get_float(
            "recovery",
            "expired_pairing_delay",
            os.getenv("WAB_RECOVERY_EXPIRED_DELAY"),
            base_policy.expired_pairing_delay,
        ),
        network_delay=get_float(
            "recovery", "network_delay", os.getenv("WAB_RECOVERY_NETWORK_DELAY"), base_policy.network_delay
        ),
        max_attempts=get_int(
            "recovery", "max_attempts", os.getenv("WAB_RECOVERY_MAX_ATTEMPTS"), base_policy.max_attempts
        ),
        max_delay=get_float("recovery", "max_delay", os.getenv("WAB_RECOVERY_MAX_DELAY"), base_policy.max_delay),
        pairing_ttl=get_float(
            "pairing", "ttl_seconds", os.getenv("WAB_PAIRING_TTL"), base_policy.pairing_ttl
        ),
    )

    settings = BridgeSettings(
        http_host=get("server", "host", os.getenv("WAB_HOST", defaults.http_host)),
        http_port=get_int("server", "port", os.getenv("WAB_PORT"), defaults.http_port),
        api_token=get("server", "api_token", os.getenv("WAB_API_TOKEN")),
        db_path=get("storage", "db_path", os.getenv("WAB_DB_PATH", defaults.db_path)),
        transport_factory=get("transport", "factory", os.getenv("WAB_TRANSPORT_FACTORY")),
        probe_url=get("transport", "probe_url", os.getenv("WAB_PROBE_URL", defaults.probe_url)),
        connect_timeout=get_float(
            "transport", "connect_timeout", os.getenv("WAB_CONNECT_TIMEOUT"), defaults.connect_timeout
        ),
        print_qr=get_bool("transport", "print_qr", os.getenv("WAB_PRINT_QR"), False),
        restore_sessions=get_bool("transport", "restore_sessions", os.getenv("WAB_RESTORE_SESSIONS"), False),
        recovery=recovery,
        message_max=get_int("limits", "message_max", os.getenv("WAB_MESSAGE_MAX"), defaults.message_max),
        message_window=get_float(
            "limits", "message_window", os.getenv("WAB_MESSAGE_WINDOW"), defaults.message_window
        ),
        email_max=get_int("limits", "email_max", os.getenv("WAB_EMAIL_MAX"), defaults.email_max),
        email_window=get_float("limits", "email_window", os.getenv("WAB_EMAIL_WINDOW"), defaults.email_window),
        smtp_host=get("smtp", "host", os.getenv("WAB_SMTP_HOST")),
        smtp_port=get_int("smtp", "port", os.getenv("WAB_SMTP_PORT")),
        smtp_user=get("smtp", "user", os.getenv("WAB_SMTP_USER")),
        smtp_password=get("smtp", "password", os.getenv("WAB_SMTP_PASSWORD")),
        smtp_use_tls=get_bool("smtp", "use_tls", os.getenv("WAB_SMTP_USE_TLS"), True),
        smtp_pool_ttl=get_int("smtp", "pool_ttl", os.getenv("WAB_SMTP_POOL_TTL"), defaults.smtp_pool_ttl),
        shutdown_timeout=get_float(
            "shutdown", "timeout", os.getenv("WAB_SHUTDOWN_TIMEOUT"), defaults.shutdown_timeout
        ),
        log_level=(get("logging", "level", os.getenv("WAB_LOG_LEVEL", defaults.log_level)) or "INFO").upper(),
    )

    settings.db_path = os.path.expanduser(settings.db_path)
    token = settings.api_token
    if isinstance(token, str):
        token = token.strip() or None
    settings.api_token = token
    if settings.probe_url is not None:
        settings.probe_url = settings.probe_url.strip() or None
    if settings.transport_factory is not None:
        settings.transport_factory = settings.transport_factory.strip() or None
    return settings
