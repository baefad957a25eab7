"""Idempotency ledger: durable record of consumed payment proofs.

The write path relies on the storage layer's primary key, not on an
application-level check, so concurrent writers in any number of processes
sharing the database see exactly one winner:

- SQLite: ``INSERT OR IGNORE`` + ``rowcount``
- PostgreSQL: ``INSERT ... ON CONFLICT DO NOTHING RETURNING``

The loser gets ``AlreadyProcessed`` carrying the winning entry.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from basehealth_core.database import Database
from basehealth_core.exceptions import AlreadyProcessed, ConfigError

from .models import ProcessedPayment, normalize_principal

logger = logging.getLogger(__name__)


def _path_from_dsn(dsn: str) -> str:
    if not dsn.startswith("sqlite:///"):
        raise ValueError(f"unsupported DSN: {dsn}")
    raw = dsn.removeprefix("sqlite:///")
    if raw == ":memory:":
        return raw
    path = Path(raw)
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerStore(ABC):
    """Narrow interface over the durable ledger."""

    async def is_processed(self, payment_id: str) -> bool:
        return await self.get(payment_id) is not None

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[ProcessedPayment]:
        """Return the entry for a payment id, if any."""

    @abstractmethod
    async def _insert(self, entry: ProcessedPayment) -> bool:
        """Insert unless the key exists. True when this call wrote the row."""

    async def mark_processed(
        self,
        payment_id: str,
        order_id: str,
        sender: Optional[str],
        amount: int,
        *,
        network: str,
        resource: str,
        service_type: Optional[str] = None,
        principal: Optional[str] = None,
        session_id: Optional[str] = None,
        required_amount: Optional[int] = None,
        settled_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProcessedPayment:
        """Record a payment id exactly once.

        Raises:
            AlreadyProcessed: the id is already recorded; ``existing`` holds
                the first writer's entry.
        """
        entry = ProcessedPayment(
            payment_id=payment_id,
            order_id=order_id,
            sender=normalize_principal(sender),
            amount=int(amount),
            settled_at=settled_at or _utcnow(),
            network=network,
            resource=resource,
            service_type=service_type,
            principal=normalize_principal(principal),
            session_id=session_id,
            required_amount=required_amount,
            metadata=dict(metadata or {}),
        )
        if not await self._insert(entry):
            existing = await self.get(payment_id)
            logger.info("Payment %s already processed (order %s)", payment_id,
                        existing.order_id if existing else None)
            raise AlreadyProcessed(payment_id, existing)

        if entry.surplus:
            logger.info(
                "Payment %s overpaid by %s units on %s; surplus recorded",
                payment_id,
                entry.surplus,
                network,
            )
        logger.info("Payment %s recorded for order %s", payment_id, order_id)
        return entry

    @abstractmethod
    async def find_for_session(self, session_id: str) -> List[ProcessedPayment]:
        """Entries written by one checkout session."""

    @abstractmethod
    async def latest_for_resource(self, principal: str, resource: str) -> Optional[ProcessedPayment]:
        """Most recent entry for principal + resource."""

    @abstractmethod
    async def latest_for_service(
        self,
        principal: str,
        service_type: str,
        since: datetime,
    ) -> Optional[ProcessedPayment]:
        """Most recent entry for principal + service type settled at or after ``since``."""

    @abstractmethod
    async def annotate(self, payment_id: str, metadata: Dict[str, Any]) -> bool:
        """Merge auxiliary metadata into an existing entry. False if unknown."""

    @abstractmethod
    async def has_event(self, source: str, event_id: str) -> bool:
        """True when an external event id was already recorded."""

    @abstractmethod
    async def record_event(self, source: str, event_id: str) -> bool:
        """Remember an external event id. False when it was already seen."""

    async def close(self) -> None:
        return None


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_payments (
    payment_id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    sender TEXT,
    amount TEXT NOT NULL,
    required_amount TEXT,
    network TEXT NOT NULL,
    resource TEXT NOT NULL,
    service_type TEXT,
    principal TEXT,
    session_id TEXT,
    settled_at REAL NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_payments_service
    ON processed_payments(principal, service_type, settled_at);
CREATE INDEX IF NOT EXISTS idx_payments_resource
    ON processed_payments(principal, resource, settled_at);
CREATE INDEX IF NOT EXISTS idx_payments_session
    ON processed_payments(session_id);
CREATE TABLE IF NOT EXISTS ledger_events (
    source TEXT NOT NULL,
    event_id TEXT NOT NULL,
    received_at REAL NOT NULL,
    PRIMARY KEY (source, event_id)
);
"""

_COLUMNS = (
    "payment_id, order_id, sender, amount, required_amount, network, resource, "
    "service_type, principal, session_id, settled_at, metadata"
)


class SqliteLedgerStore(LedgerStore):
    """Ledger backed by sqlite, safe across processes sharing the file.

    sqlite3 is blocking, so every statement runs on a worker thread through
    ``asyncio.to_thread``; the connection lock is only held there.
    """

    def __init__(self, dsn: str) -> None:
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(_path_from_dsn(dsn), check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SQLITE_SCHEMA)
        self._conn.commit()

    @staticmethod
    def _row(row: Optional[sqlite3.Row]) -> Optional[ProcessedPayment]:
        if row is None:
            return None
        return ProcessedPayment(
            payment_id=row["payment_id"],
            order_id=row["order_id"],
            sender=row["sender"],
            amount=int(row["amount"]),
            required_amount=int(row["required_amount"]) if row["required_amount"] is not None else None,
            network=row["network"],
            resource=row["resource"],
            service_type=row["service_type"],
            principal=row["principal"],
            session_id=row["session_id"],
            settled_at=datetime.fromtimestamp(row["settled_at"], tz=timezone.utc),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    # --- blocking helpers, run on a worker thread -----------------------

    def _fetchone(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: tuple) -> int:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor.rowcount

    def _merge_metadata(self, payment_id: str, metadata: Dict[str, Any]) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT metadata FROM processed_payments WHERE payment_id = ?",
                (payment_id,),
            ).fetchone()
            if row is None:
                return False
            merged = json.loads(row["metadata"] or "{}")
            merged.update(metadata)
            self._conn.execute(
                "UPDATE processed_payments SET metadata = ? WHERE payment_id = ?",
                (json.dumps(merged), payment_id),
            )
            self._conn.commit()
            return True

    def _close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- LedgerStore ------------------------------------------------------

    async def get(self, payment_id: str) -> Optional[ProcessedPayment]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM processed_payments WHERE payment_id = ?",
            (payment_id,),
        )
        return self._row(row)

    async def _insert(self, entry: ProcessedPayment) -> bool:
        written = await asyncio.to_thread(
            self._write,
            f"INSERT OR IGNORE INTO processed_payments ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.payment_id,
                entry.order_id,
                entry.sender,
                str(entry.amount),
                str(entry.required_amount) if entry.required_amount is not None else None,
                entry.network,
                entry.resource,
                entry.service_type,
                entry.principal,
                entry.session_id,
                entry.settled_at.timestamp(),
                json.dumps(entry.metadata),
            ),
        )
        return written == 1

    async def find_for_session(self, session_id: str) -> List[ProcessedPayment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM processed_payments WHERE session_id = ? ORDER BY settled_at",
            (session_id,),
        )
        return [self._row(row) for row in rows]

    async def latest_for_resource(self, principal: str, resource: str) -> Optional[ProcessedPayment]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM processed_payments "
            "WHERE principal = ? AND resource = ? ORDER BY settled_at DESC LIMIT 1",
            (normalize_principal(principal), resource),
        )
        return self._row(row)

    async def latest_for_service(
        self,
        principal: str,
        service_type: str,
        since: datetime,
    ) -> Optional[ProcessedPayment]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM processed_payments "
            "WHERE principal = ? AND service_type = ? AND settled_at >= ? "
            "ORDER BY settled_at DESC LIMIT 1",
            (normalize_principal(principal), service_type, since.timestamp()),
        )
        return self._row(row)

    async def annotate(self, payment_id: str, metadata: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._merge_metadata, payment_id, metadata)

    async def has_event(self, source: str, event_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM ledger_events WHERE source = ? AND event_id = ?",
            (source, event_id),
        )
        return row is not None

    async def record_event(self, source: str, event_id: str) -> bool:
        written = await asyncio.to_thread(
            self._write,
            "INSERT OR IGNORE INTO ledger_events (source, event_id, received_at) VALUES (?, ?, ?)",
            (source, event_id, _utcnow().timestamp()),
        )
        return written == 1

    async def close(self) -> None:
        await asyncio.to_thread(self._close)


_POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_payments (
    payment_id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    sender TEXT,
    amount TEXT NOT NULL,
    required_amount TEXT,
    network TEXT NOT NULL,
    resource TEXT NOT NULL,
    service_type TEXT,
    principal TEXT,
    session_id TEXT,
    settled_at TIMESTAMPTZ NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS idx_payments_service
    ON processed_payments(principal, service_type, settled_at DESC);
CREATE INDEX IF NOT EXISTS idx_payments_resource
    ON processed_payments(principal, resource, settled_at DESC);
CREATE INDEX IF NOT EXISTS idx_payments_session
    ON processed_payments(session_id);
CREATE TABLE IF NOT EXISTS ledger_events (
    source TEXT NOT NULL,
    event_id TEXT NOT NULL,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (source, event_id)
);
"""


class PostgresLedgerStore(LedgerStore):
    """Ledger backed by PostgreSQL through the shared asyncpg pool."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._schema_ready = False

    async def _pool(self):
        pool = await Database.get_pool(self._dsn)
        if not self._schema_ready:
            async with pool.acquire() as conn:
                await conn.execute(_POSTGRES_SCHEMA)
            self._schema_ready = True
        return pool

    @staticmethod
    def _row(row: Any) -> Optional[ProcessedPayment]:
        if row is None:
            return None
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return ProcessedPayment(
            payment_id=row["payment_id"],
            order_id=row["order_id"],
            sender=row["sender"],
            amount=int(row["amount"]),
            required_amount=int(row["required_amount"]) if row["required_amount"] is not None else None,
            network=row["network"],
            resource=row["resource"],
            service_type=row["service_type"],
            principal=row["principal"],
            session_id=row["session_id"],
            settled_at=row["settled_at"],
            metadata=metadata or {},
        )

    async def get(self, payment_id: str) -> Optional[ProcessedPayment]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM processed_payments WHERE payment_id = $1",
                payment_id,
            )
        return self._row(row)

    async def _insert(self, entry: ProcessedPayment) -> bool:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO processed_payments ({_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb)
                ON CONFLICT (payment_id) DO NOTHING
                RETURNING payment_id
                """,
                entry.payment_id,
                entry.order_id,
                entry.sender,
                str(entry.amount),
                str(entry.required_amount) if entry.required_amount is not None else None,
                entry.network,
                entry.resource,
                entry.service_type,
                entry.principal,
                entry.session_id,
                entry.settled_at,
                json.dumps(entry.metadata),
            )
        return row is not None

    async def find_for_session(self, session_id: str) -> List[ProcessedPayment]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM processed_payments WHERE session_id = $1 ORDER BY settled_at",
                session_id,
            )
        return [self._row(row) for row in rows]

    async def latest_for_resource(self, principal: str, resource: str) -> Optional[ProcessedPayment]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_COLUMNS} FROM processed_payments
                WHERE principal = $1 AND resource = $2
                ORDER BY settled_at DESC LIMIT 1
                """,
                normalize_principal(principal),
                resource,
            )
        return self._row(row)

    async def latest_for_service(
        self,
        principal: str,
        service_type: str,
        since: datetime,
    ) -> Optional[ProcessedPayment]:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_COLUMNS} FROM processed_payments
                WHERE principal = $1 AND service_type = $2 AND settled_at >= $3
                ORDER BY settled_at DESC LIMIT 1
                """,
                normalize_principal(principal),
                service_type,
                since,
            )
        return self._row(row)

    async def annotate(self, payment_id: str, metadata: Dict[str, Any]) -> bool:
        pool = await self._pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE processed_payments SET metadata = metadata || $2::jsonb WHERE payment_id = $1",
                payment_id,
                json.dumps(metadata),
            )
        # asyncpg returns "UPDATE <n>"
        return result.split()[-1] != "0"

    async def has_event(self, source: str, event_id: str) -> bool:
        pool = await self._pool()
        async with pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM ledger_events WHERE source = $1 AND event_id = $2",
                source,
                event_id,
            )
        return found is not None

    async def record_event(self, source: str, event_id: str) -> bool:
        pool = await self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ledger_events (source, event_id)
                VALUES ($1, $2)
                ON CONFLICT (source, event_id) DO NOTHING
                RETURNING event_id
                """,
                source,
                event_id,
            )
        return row is not None


def create_ledger_store(dsn: str) -> LedgerStore:
    """Pick the ledger backend for a DSN.

    Raises:
        ConfigError: for DSNs without a durable unique-insert primitive.
    """
    if dsn.startswith("sqlite:///"):
        return SqliteLedgerStore(dsn)
    if dsn.startswith(("postgresql://", "postgres://")):
        return PostgresLedgerStore(dsn)
    raise ConfigError(
        f"Unsupported ledger DSN '{dsn}': the ledger needs sqlite:/// or postgresql://",
        details={"dsn": dsn},
    )


__all__ = [
    "LedgerStore",
    "SqliteLedgerStore",
    "PostgresLedgerStore",
    "create_ledger_store",
]
