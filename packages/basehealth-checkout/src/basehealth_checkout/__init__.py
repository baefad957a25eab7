"""Checkout state machine, session storage and card processor integration."""

from .machine import CheckoutMachine, settle_session_id
from .models import (
    ALLOWED_TRANSITIONS,
    CheckoutSession,
    CheckoutState,
    ProofAttempt,
    Receipt,
    SessionKind,
    WalletBinding,
)
from .sessions import InMemorySessionStore, SessionStore, SqliteSessionStore, create_session_store
from .webhooks import StripeWebhookConsumer, WebhookOutcome

__all__ = [
    "CheckoutMachine",
    "settle_session_id",
    "ALLOWED_TRANSITIONS",
    "CheckoutSession",
    "CheckoutState",
    "ProofAttempt",
    "Receipt",
    "SessionKind",
    "WalletBinding",
    "SessionStore",
    "InMemorySessionStore",
    "SqliteSessionStore",
    "create_session_store",
    "StripeWebhookConsumer",
    "WebhookOutcome",
]
