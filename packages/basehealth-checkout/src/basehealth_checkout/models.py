"""Checkout session data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
import uuid

from basehealth_protocol.schemas import PaymentRequirement


class CheckoutState(str, Enum):
    """Stage of one purchase attempt."""
    IDLE = "idle"
    QUOTE_READY = "quote_ready"
    WALLET_READY = "wallet_ready"
    AWAITING_CONFIRM = "awaiting_confirm"
    TX_PENDING = "tx_pending"
    CONFIRMED = "confirmed"
    RECEIPT = "receipt"
    FAILED = "failed"


class SessionKind(str, Enum):
    """Interactive checkout or the stateless settle path."""
    CHECKOUT = "checkout"
    SETTLE = "settle"


ALLOWED_TRANSITIONS: Dict[CheckoutState, FrozenSet[CheckoutState]] = {
    CheckoutState.IDLE: frozenset({CheckoutState.QUOTE_READY}),
    CheckoutState.QUOTE_READY: frozenset({CheckoutState.WALLET_READY}),
    CheckoutState.WALLET_READY: frozenset({CheckoutState.AWAITING_CONFIRM}),
    CheckoutState.AWAITING_CONFIRM: frozenset({CheckoutState.TX_PENDING, CheckoutState.FAILED}),
    CheckoutState.TX_PENDING: frozenset({
        CheckoutState.TX_PENDING,
        CheckoutState.CONFIRMED,
        CheckoutState.FAILED,
    }),
    # confirmed -> failed: the proof was consumed by another session first
    CheckoutState.CONFIRMED: frozenset({CheckoutState.RECEIPT, CheckoutState.FAILED}),
    CheckoutState.RECEIPT: frozenset(),
    CheckoutState.FAILED: frozenset({CheckoutState.QUOTE_READY}),
}

TERMINAL_STATES = frozenset({CheckoutState.RECEIPT, CheckoutState.FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ProofAttempt:
    """One proof submitted to a session and what became of it."""
    payment_id: Optional[str]
    submitted_at: datetime
    status: str = "submitted"
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "submittedAt": self.submitted_at.isoformat(),
            "status": self.status,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofAttempt":
        return cls(
            payment_id=data.get("paymentId"),
            submitted_at=datetime.fromisoformat(data["submittedAt"]),
            status=data.get("status", "submitted"),
            reason=data.get("reason"),
        )


@dataclass
class WalletBinding:
    """The signer or payment method the client reported."""
    scheme: str
    network: str
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"scheme": self.scheme, "network": self.network, "address": self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletBinding":
        return cls(scheme=data["scheme"], network=data["network"], address=data.get("address"))


@dataclass
class Receipt:
    """Proof of fulfillment handed back to the client."""
    receipt_id: str
    session_id: str
    order_id: str
    payment_id: str
    network: str
    resource: str
    sender: Optional[str]
    amount: int
    required_amount: Optional[int]
    surplus: int
    settled_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receiptId": self.receipt_id,
            "sessionId": self.session_id,
            "orderId": self.order_id,
            "paymentId": self.payment_id,
            "network": self.network,
            "resource": self.resource,
            "sender": self.sender,
            "amount": str(self.amount),
            "requiredAmount": str(self.required_amount) if self.required_amount is not None else None,
            "surplus": str(self.surplus),
            "settledAt": self.settled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Receipt":
        required = data.get("requiredAmount")
        return cls(
            receipt_id=data["receiptId"],
            session_id=data["sessionId"],
            order_id=data["orderId"],
            payment_id=data["paymentId"],
            network=data["network"],
            resource=data["resource"],
            sender=data.get("sender"),
            amount=int(data["amount"]),
            required_amount=int(required) if required is not None else None,
            surplus=int(data.get("surplus") or 0),
            settled_at=datetime.fromisoformat(data["settledAt"]),
        )


@dataclass
class CheckoutSession:
    """One resource purchase attempt, owned by the checkout machine."""
    session_id: str = field(default_factory=lambda: f"cs_{uuid.uuid4().hex}")
    order_id: str = field(default_factory=lambda: f"ord_{uuid.uuid4().hex[:16]}")
    kind: SessionKind = SessionKind.CHECKOUT
    principal: Optional[str] = None
    resource_id: Optional[str] = None
    requirement: Optional[PaymentRequirement] = None
    state: CheckoutState = CheckoutState.IDLE
    wallet: Optional[WalletBinding] = None
    payment_header: Optional[str] = None
    payment_id: Optional[str] = None
    attempts: List[ProofAttempt] = field(default_factory=list)
    failed_payment_ids: List[str] = field(default_factory=list)
    retry_count: int = 0
    verification_attempts: int = 0
    error: Optional[str] = None
    receipt: Optional[Receipt] = None
    quoted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def current_attempt(self) -> Optional[ProofAttempt]:
        return self.attempts[-1] if self.attempts else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "orderId": self.order_id,
            "kind": self.kind.value,
            "principal": self.principal,
            "resourceId": self.resource_id,
            "requirement": self.requirement.to_wire() if self.requirement else None,
            "state": self.state.value,
            "wallet": self.wallet.to_dict() if self.wallet else None,
            "paymentHeader": self.payment_header,
            "paymentId": self.payment_id,
            "attempts": [a.to_dict() for a in self.attempts],
            "failedPaymentIds": list(self.failed_payment_ids),
            "retryCount": self.retry_count,
            "verificationAttempts": self.verification_attempts,
            "error": self.error,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "quotedAt": _iso(self.quoted_at),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Session view for API responses, without the raw proof header."""
        data = self.to_dict()
        data.pop("paymentHeader")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutSession":
        requirement = data.get("requirement")
        wallet = data.get("wallet")
        receipt = data.get("receipt")
        return cls(
            session_id=data["sessionId"],
            order_id=data["orderId"],
            kind=SessionKind(data.get("kind", SessionKind.CHECKOUT.value)),
            principal=data.get("principal"),
            resource_id=data.get("resourceId"),
            requirement=PaymentRequirement.model_validate(requirement) if requirement else None,
            state=CheckoutState(data["state"]),
            wallet=WalletBinding.from_dict(wallet) if wallet else None,
            payment_header=data.get("paymentHeader"),
            payment_id=data.get("paymentId"),
            attempts=[ProofAttempt.from_dict(a) for a in data.get("attempts", [])],
            failed_payment_ids=list(data.get("failedPaymentIds", [])),
            retry_count=int(data.get("retryCount", 0)),
            verification_attempts=int(data.get("verificationAttempts", 0)),
            error=data.get("error"),
            receipt=Receipt.from_dict(receipt) if receipt else None,
            quoted_at=_parse(data.get("quotedAt")),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )


__all__ = [
    "CheckoutState",
    "SessionKind",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "ProofAttempt",
    "WalletBinding",
    "Receipt",
    "CheckoutSession",
]
