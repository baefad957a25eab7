"""Idempotency ledger and access gate."""

from .access import AccessDecision, AccessGate
from .models import Entitlement, ProcessedPayment, normalize_principal
from .store import LedgerStore, PostgresLedgerStore, SqliteLedgerStore, create_ledger_store

__all__ = [
    "AccessDecision",
    "AccessGate",
    "Entitlement",
    "ProcessedPayment",
    "normalize_principal",
    "LedgerStore",
    "PostgresLedgerStore",
    "SqliteLedgerStore",
    "create_ledger_store",
]
