"""
Checkout session storage.

Sessions are stored as their JSON form so every backend round-trips the
same representation. The in-memory store is for development and tests;
the sqlite store survives restarts of a single-node deployment.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from basehealth_core.exceptions import ConfigError

from .models import CheckoutSession

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Abstract interface for checkout session storage."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        """Get a session by ID."""

    @abstractmethod
    async def save(self, session: CheckoutSession) -> CheckoutSession:
        """Create or replace a session."""

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """
    In-memory session store for development and testing.

    Note: sessions are lost on restart. Use the sqlite store for anything
    that must survive a deploy.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, dict] = {}

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        data = self._sessions.get(session_id)
        return CheckoutSession.from_dict(data) if data else None

    async def save(self, session: CheckoutSession) -> CheckoutSession:
        self._sessions[session.session_id] = session.to_dict()
        return session


_SCHEMA = """
CREATE TABLE IF NOT EXISTS checkout_sessions (
    session_id TEXT PRIMARY KEY,
    principal TEXT,
    state TEXT NOT NULL,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);
"""

_UPSERT = """
INSERT INTO checkout_sessions (session_id, principal, state, created_at, data)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(session_id) DO UPDATE SET
    principal = excluded.principal,
    state = excluded.state,
    data = excluded.data
"""


class SqliteSessionStore(SessionStore):
    """Session store backed by a local sqlite file.

    Statements run on a worker thread so a busy database never stalls the
    event loop.
    """

    def __init__(self, dsn: str) -> None:
        raw = dsn.removeprefix("sqlite:///")
        if raw != ":memory:":
            Path(raw).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(raw, check_same_thread=False, timeout=5.0)
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def _load(self, session_id: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM checkout_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return row[0] if row else None

    def _store(self, params: tuple) -> None:
        with self._lock:
            self._conn.execute(_UPSERT, params)
            self._conn.commit()

    def _close(self) -> None:
        with self._lock:
            self._conn.close()

    async def get(self, session_id: str) -> Optional[CheckoutSession]:
        data = await asyncio.to_thread(self._load, session_id)
        return CheckoutSession.from_dict(json.loads(data)) if data else None

    async def save(self, session: CheckoutSession) -> CheckoutSession:
        params = (
            session.session_id,
            session.principal,
            session.state.value,
            session.created_at.isoformat(),
            json.dumps(session.to_dict()),
        )
        await asyncio.to_thread(self._store, params)
        return session

    async def close(self) -> None:
        await asyncio.to_thread(self._close)


def create_session_store(dsn: str) -> SessionStore:
    """Pick the session backend for a DSN (``memory://`` or ``sqlite:///``)."""
    if dsn == "memory://":
        logger.warning("Using in-memory checkout sessions; they are lost on restart")
        return InMemorySessionStore()
    if dsn.startswith("sqlite:///"):
        return SqliteSessionStore(dsn)
    raise ConfigError(
        f"Unsupported session DSN '{dsn}'",
        details={"dsn": dsn},
    )


__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "SqliteSessionStore",
    "create_session_store",
]
