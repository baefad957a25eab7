"""Dependency container shared by the API routers.

Routers declare ``Depends(get_deps)``; ``create_app`` installs the real
container through ``app.dependency_overrides``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from basehealth_checkout.connectors.stripe import StripeConnector
from basehealth_checkout.machine import CheckoutMachine
from basehealth_checkout.sessions import SessionStore
from basehealth_checkout.webhooks import StripeWebhookConsumer
from basehealth_core.config import PaymentSettings
from basehealth_ledger.access import AccessGate
from basehealth_ledger.store import LedgerStore
from basehealth_protocol.registry import RequirementRegistry
from basehealth_protocol.verifier import VerifierSet


@dataclass
class PaymentDependencies:
    settings: PaymentSettings
    registry: RequirementRegistry
    verifiers: VerifierSet
    ledger: LedgerStore
    sessions: SessionStore
    machine: CheckoutMachine
    access: AccessGate
    stripe: Optional[StripeConnector] = None
    webhooks: Optional[StripeWebhookConsumer] = None


def get_deps() -> PaymentDependencies:
    raise NotImplementedError("Dependency override required")
