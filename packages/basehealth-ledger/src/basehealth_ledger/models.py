"""Ledger records and derived entitlements."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_principal(principal: Optional[str]) -> Optional[str]:
    """EVM addresses compare case-insensitively; other ids verbatim."""
    if principal is None:
        return None
    principal = principal.strip()
    if _EVM_ADDRESS_RE.match(principal):
        return principal.lower()
    return principal


@dataclass(frozen=True)
class ProcessedPayment:
    """A consumed payment proof. Written once, keyed by ``payment_id``."""
    payment_id: str
    order_id: str
    sender: Optional[str]
    amount: int
    settled_at: datetime
    network: str
    resource: str
    service_type: Optional[str] = None
    principal: Optional[str] = None
    session_id: Optional[str] = None
    required_amount: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def surplus(self) -> int:
        """Over-payment kept for reconciliation."""
        if self.required_amount is None:
            return 0
        return max(self.amount - self.required_amount, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "orderId": self.order_id,
            "sender": self.sender,
            "amount": str(self.amount),
            "requiredAmount": str(self.required_amount) if self.required_amount is not None else None,
            "surplus": str(self.surplus),
            "settledAt": self.settled_at.isoformat(),
            "network": self.network,
            "resource": self.resource,
            "serviceType": self.service_type,
            "principal": self.principal,
            "sessionId": self.session_id,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class Entitlement:
    """Time-bounded grant derived from a ledger entry on every read."""
    principal: str
    service_type: str
    source_payment_id: str
    resource: str
    settled_at: datetime
    duration: timedelta

    @property
    def valid_until(self) -> datetime:
        return self.settled_at + self.duration

    def is_active(self, now: datetime) -> bool:
        return now < self.valid_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal,
            "serviceType": self.service_type,
            "resource": self.resource,
            "sourcePaymentId": self.source_payment_id,
            "settledAt": self.settled_at.isoformat(),
            "validUntil": self.valid_until.isoformat(),
        }


__all__ = ["ProcessedPayment", "Entitlement", "normalize_principal"]
