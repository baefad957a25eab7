"""Verifier set: capability-keyed dispatch of payment proofs.

Each verifier owns the external calls for exactly one (scheme, network)
pair and reports expected conditions (unconfirmed, underpaid, expired) as a
``VerificationResult``. Only unusable upstream answers raise; the set turns
those into ``network_error`` results so callers see a single typed outcome.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from basehealth_core.exceptions import UnsupportedSchemeError

from .codec import match_requirement
from .reason_codes import VerificationStatus, human_message, is_retryable
from .schemas import PaymentPayload, PaymentRequirement

logger = logging.getLogger(__name__)

Capability = Tuple[str, str]


class UpstreamError(Exception):
    """An RPC node or processor answered with something unusable."""


@dataclass(slots=True)
class VerificationContext:
    """Clock and quote time a proof is judged against."""
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    issued_at: Optional[datetime] = None

    def deadline(self, requirement: PaymentRequirement) -> Optional[datetime]:
        if self.issued_at is None:
            return None
        return self.issued_at + timedelta(seconds=requirement.max_timeout_seconds)


@dataclass(slots=True)
class VerificationResult:
    """Outcome of verifying one proof. Never persisted directly."""
    status: VerificationStatus
    payment_id: str
    network: str
    invalid_reason: Optional[str] = None
    sender: Optional[str] = None
    amount: Optional[int] = None
    recipient: Optional[str] = None
    settled_at: Optional[datetime] = None

    @property
    def is_valid(self) -> bool:
        return self.status is VerificationStatus.VALID

    @property
    def retryable(self) -> bool:
        return is_retryable(self.status)

    @classmethod
    def valid(
        cls,
        payment_id: str,
        network: str,
        *,
        sender: Optional[str],
        amount: int,
        recipient: Optional[str],
        settled_at: Optional[datetime] = None,
    ) -> "VerificationResult":
        return cls(
            status=VerificationStatus.VALID,
            payment_id=payment_id,
            network=network,
            sender=sender,
            amount=amount,
            recipient=recipient,
            settled_at=settled_at,
        )

    @classmethod
    def failure(
        cls,
        status: VerificationStatus,
        payment_id: str,
        network: str,
        detail: Optional[str] = None,
        **fields: Any,
    ) -> "VerificationResult":
        reason = human_message(status)
        if detail:
            reason = f"{reason}: {detail}"
        return cls(
            status=status,
            payment_id=payment_id,
            network=network,
            invalid_reason=reason,
            **fields,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "status": self.status.value,
            "invalidReason": self.invalid_reason,
            "paymentId": self.payment_id,
            "network": self.network,
            "sender": self.sender,
            "amount": str(self.amount) if self.amount is not None else None,
            "recipient": self.recipient,
            "settledAt": self.settled_at.isoformat() if self.settled_at else None,
        }


def check_expiry(
    requirement: PaymentRequirement,
    context: VerificationContext,
    onchain_time: Optional[datetime],
) -> Optional[str]:
    """Return an expiry detail if the proof is outside the payment window.

    The window is ``maxTimeoutSeconds`` long. A proof presented after
    ``issued_at + maxTimeoutSeconds`` is expired, and so is a payment
    executed more than ``maxTimeoutSeconds`` before the reference time
    (the quote time when known, otherwise now).
    """
    window = timedelta(seconds=requirement.max_timeout_seconds)
    deadline = context.deadline(requirement)
    if deadline is not None and context.now > deadline:
        return f"presented {int((context.now - deadline).total_seconds())}s after the deadline"
    if onchain_time is not None:
        reference = context.issued_at or context.now
        if reference - onchain_time > window:
            return "payment is older than the requirement window"
    return None


class PaymentVerifier(ABC):
    """Verifies proofs for a single (scheme, network) capability."""

    scheme: str
    network: str

    @property
    def capability(self) -> Capability:
        return (self.scheme, self.network)

    @abstractmethod
    def payment_id(self, payload: PaymentPayload) -> str:
        """Canonical ledger key for the proof. Raises DecodeError if malformed."""

    @abstractmethod
    async def verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        context: VerificationContext,
    ) -> VerificationResult:
        """Check the proof against the requirement."""

    async def aclose(self) -> None:
        return None


class VerifierSet:
    """Closed registry of verifiers keyed by (scheme, network).

    There is no fallback verifier: an unregistered capability is rejected.
    """

    def __init__(self, verifiers: Iterable[PaymentVerifier] = ()) -> None:
        self._verifiers: Dict[Capability, PaymentVerifier] = {}
        for verifier in verifiers:
            self.register(verifier)

    def register(self, verifier: PaymentVerifier) -> None:
        if verifier.capability in self._verifiers:
            raise ValueError(f"verifier already registered for {verifier.capability}")
        self._verifiers[verifier.capability] = verifier
        logger.info("Registered verifier %s for %s/%s", type(verifier).__name__, *verifier.capability)

    def get(self, scheme: str, network: str) -> PaymentVerifier:
        verifier = self._verifiers.get((scheme, network))
        if verifier is None:
            raise UnsupportedSchemeError(scheme, network)
        return verifier

    def supports(self, scheme: str, network: str) -> bool:
        return (scheme, network) in self._verifiers

    def kinds(self) -> List[Dict[str, str]]:
        return [{"scheme": s, "network": n} for s, n in sorted(self._verifiers)]

    def payment_id(self, payload: PaymentPayload) -> str:
        return self.get(payload.scheme, payload.network).payment_id(payload)

    async def verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        context: Optional[VerificationContext] = None,
    ) -> VerificationResult:
        """Dispatch to the verifier registered for the requirement.

        Raises:
            SchemeNetworkMismatchError: payload and requirement disagree.
            UnsupportedSchemeError: no verifier for the requirement.
        """
        match_requirement(payload, requirement)
        verifier = self.get(requirement.scheme, requirement.network)
        payment_id = verifier.payment_id(payload)
        context = context or VerificationContext()
        try:
            return await verifier.verify(payload, requirement, context)
        except (UpstreamError, httpx.HTTPError, KeyError, ValueError, TypeError) as exc:
            logger.warning(
                "Verifier %s raised for payment %s on %s: %s",
                type(verifier).__name__,
                payment_id,
                requirement.network,
                exc,
                exc_info=True,
            )
            return VerificationResult.failure(
                VerificationStatus.NETWORK_ERROR,
                payment_id,
                requirement.network,
                detail=type(exc).__name__,
            )

    async def aclose(self) -> None:
        for verifier in self._verifiers.values():
            await verifier.aclose()


__all__ = [
    "Capability",
    "UpstreamError",
    "VerificationContext",
    "VerificationResult",
    "PaymentVerifier",
    "VerifierSet",
    "check_expiry",
]
