# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed storage for per-session credential bundles.

Each session owns one credential bundle: the opaque, JSON-serialisable key
material produced by the messaging transport after pairing. The bundle is
written on every credential update, read on every connection attempt so
that reconnects skip pairing, and deleted when the remote end logs the
session out.

The store uses aiosqlite; every operation opens and closes its own
connection, which keeps it safe for concurrent use from different sessions.
Only the owning session's supervisor handlers write a given row.

Example:
    Basic usage::

        store = CredentialStore("/data/wa_bridge.db")
        await store.init_db()
        await store.save("s1", {"me": {"id": "391234:1@s.whatsapp.net"}})
        creds = await store.load("s1")
"""

from __future__ import annotations

import json
import time
from typing import Any

import aiosqlite


class CredentialStore:
    """Async SQLite persistence for session credentials.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: str = "/data/wa_bridge.db"):
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file. An in-memory database
                does not survive between connections and is only useful in
                tests that never reload.
        """
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the credentials table when missing. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    session_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.commit()

    async def save(self, session_id: str, credentials: dict[str, Any]) -> None:
        """Insert or replace the bundle for ``session_id``."""
        payload = json.dumps(credentials, default=str)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO credentials (session_id, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    payload=excluded.payload,
                    updated_at=excluded.updated_at
                """,
                (session_id, payload, int(time.time())),
            )
            await db.commit()

    async def load(self, session_id: str) -> dict[str, Any] | None:
        """Return the stored bundle, or None when the session never paired.

        A row whose payload is not valid JSON is treated as missing so that
        the session falls back to a fresh pairing.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT payload FROM credentials WHERE session_id=?", (session_id,)
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    async def delete(self, session_id: str) -> bool:
        """Remove the bundle; return True when a row was deleted."""
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM credentials WHERE session_id=?", (session_id,))
            await db.commit()
            return cur.rowcount > 0

    async def list_sessions(self) -> list[str]:
        """Return the ids of every session with stored credentials."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT session_id FROM credentials ORDER BY session_id") as cur:
                rows = await cur.fetchall()
        return [row[0] for row in rows]
