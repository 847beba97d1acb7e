# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the messaging bridge.

This module provides the ``wa-bridge`` command: it runs the server and
drives a running instance through its HTTP API.

Usage:
    wa-bridge serve --config config.ini
    wa-bridge connect shop-1
    wa-bridge qr shop-1 --wait
    wa-bridge send shop-1 391234567890 "Hello"
    wa-bridge sessions
    wa-bridge --url http://bridge:8000 --token secret health
"""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any

import click
import requests
from rich.console import Console
from rich.table import Table

from async_wa_bridge.client import BridgeClient, BridgeClientError
from async_wa_bridge.qr import render_qr

CLIENT_ERRORS = (BridgeClientError, requests.RequestException)

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "connected": "green",
    "qr_pending": "yellow",
    "authenticating": "cyan",
    "connecting": "cyan",
    "reconnecting": "yellow",
    "disconnected": "dim",
    "failed": "red",
    "qr_expired": "red",
    "not_initialized": "dim",
}


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _fail(exc: Exception) -> None:
    if isinstance(exc, BridgeClientError) and exc.retry_after is not None:
        print_error(f"{exc.message} (retry after {exc.retry_after}s)")
    else:
        print_error(str(exc))
    sys.exit(1)


@click.group()
@click.option("--url", envvar="WAB_URL", default="http://localhost:8000", show_default=True, help="Bridge base URL.")
@click.option("--token", envvar="WAB_API_TOKEN", default=None, help="API token (X-API-Token).")
@click.pass_context
def main(ctx: click.Context, url: str, token: str | None) -> None:
    """wa-bridge: multi-session messaging bridge."""
    ctx.obj = BridgeClient(url, token=token)


@main.command("serve")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.option("--host", default=None, help="Override [server] host.")
@click.option("--port", type=int, default=None, help="Override [server] port.")
def serve(config_path: str | None, host: str | None, port: int | None) -> None:
    """Run the bridge HTTP server."""
    import uvicorn

    from async_wa_bridge.config import load_settings

    if config_path:
        os.environ["WAB_CONFIG"] = config_path
    settings = load_settings(config_path)
    host = host or settings.http_host
    port = port or settings.http_port
    console.print(f"[bold cyan]Starting wa-bridge on {host}:{port}[/bold cyan]")
    uvicorn.run(
        "async_wa_bridge.server:app",
        host=host,
        port=port,
        timeout_graceful_shutdown=int(settings.shutdown_timeout) + 1,
    )


@main.command("sessions")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def sessions(client: BridgeClient, as_json: bool) -> None:
    """List registered sessions."""
    try:
        items = client.sessions()
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return

    if as_json:
        print_json([item.__dict__ for item in items])
        return
    if not items:
        console.print("[dim]No sessions registered.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Status")
    table.add_column("Connected")
    table.add_column("Phone")
    table.add_column("QR")
    for item in items:
        table.add_row(
            item.session_id,
            styled_status(item.status),
            "[green]yes[/green]" if item.is_connected else "[dim]no[/dim]",
            item.phone_number or "-",
            "yes" if item.has_qr_code else "-",
        )
    console.print(table)


@main.command("status")
@click.argument("session_id")
@click.pass_obj
def status(client: BridgeClient, session_id: str) -> None:
    """Show the status of a session."""
    try:
        info = client.status(session_id)
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return
    console.print(f"[bold]Session:[/bold] {info.session_id}")
    console.print(f"  Status:    {styled_status(info.status)}")
    console.print(f"  Connected: {'yes' if info.is_connected else 'no'}")
    if info.phone_number:
        console.print(f"  Phone:     {info.phone_number}")
    if info.has_qr_code:
        console.print("  QR code:   available")
    if info.last_error:
        console.print(f"  Error:     [red]{info.last_error}[/red]")


@main.command("connect")
@click.argument("session_id")
@click.pass_obj
def connect(client: BridgeClient, session_id: str) -> None:
    """Start a session."""
    try:
        result = client.connect(session_id)
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return
    print_success(result.get("message", f"Session {session_id} initiated"))
    console.print(f"  Next: wa-bridge qr {session_id} --wait")


@main.command("qr")
@click.argument("session_id")
@click.option("--wait", is_flag=True, help="Poll until a QR code is available or the session connects.")
@click.option("--timeout", type=float, default=60.0, show_default=True, help="Seconds to wait with --wait.")
@click.option("--interval", type=float, default=2.0, show_default=True, help="Polling interval with --wait.")
@click.pass_obj
def qr(client: BridgeClient, session_id: str, wait: bool, timeout: float, interval: float) -> None:
    """Render the pairing QR code of a session in the terminal."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            info = client.qr(session_id)
        except CLIENT_ERRORS as exc:
            _fail(exc)
            return
        if info.is_connected:
            print_success(f"Session {session_id} is connected ({info.phone_number or 'unknown number'})")
            return
        if info.qr_code:
            console.print(render_qr(info.qr_code))
            console.print(f"Scan with WhatsApp > Linked devices. Status: {styled_status(info.status)}")
            return
        if not wait or time.monotonic() >= deadline:
            break
        time.sleep(interval)

    message = info.message or f"No QR code available (status: {info.status})"
    print_error(message)
    sys.exit(1)


@main.command("send")
@click.argument("session_id")
@click.argument("phone_number")
@click.argument("message")
@click.pass_obj
def send(client: BridgeClient, session_id: str, phone_number: str, message: str) -> None:
    """Send a text message through a connected session."""
    try:
        receipt = client.send(session_id, phone_number, message)
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return
    print_success(f"Message {receipt.message_id} sent to {receipt.to}")


@main.command("disconnect")
@click.argument("session_id")
@click.pass_obj
def disconnect(client: BridgeClient, session_id: str) -> None:
    """Log out and forget a session."""
    try:
        result = client.disconnect(session_id)
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return
    print_success(result.get("message", f"Session {session_id} disconnected"))


@main.command("health")
@click.pass_obj
def health(client: BridgeClient) -> None:
    """Show service health."""
    try:
        data = client.health()
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return
    print_json(data)


@main.command("email-test")
@click.pass_obj
def email_test(client: BridgeClient) -> None:
    """Send the diagnostic email through the default SMTP account."""
    try:
        result = client.email_test()
    except CLIENT_ERRORS as exc:
        _fail(exc)
        return
    print_success(f"{result.get('message', 'Test email sent')} ({result.get('messageId')})")


if __name__ == "__main__":
    main()
