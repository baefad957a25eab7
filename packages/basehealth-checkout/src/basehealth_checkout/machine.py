"""
Checkout state machine.

Drives one purchase attempt through::

    idle -> quote_ready -> wallet_ready -> awaiting_confirm -> tx_pending
         -> confirmed -> receipt

with ``failed`` reachable from ``awaiting_confirm``, ``tx_pending`` and
``confirmed``, and ``failed -> quote_ready`` as the only way back.

Transitions of one session are serialized by a per-session lock; different
sessions never wait on each other. This module is the only writer of the
idempotency ledger.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
import weakref
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from basehealth_core.exceptions import (
    AlreadyProcessed,
    InvalidTransition,
    ProtocolError,
    SchemeNetworkMismatchError,
    SessionNotFound,
    UnsupportedSchemeError,
)
from basehealth_core.logging_config import set_payment_context
from basehealth_ledger.models import normalize_principal
from basehealth_ledger.store import LedgerStore
from basehealth_protocol.codec import check_version, decode_payment_payload, match_requirement
from basehealth_protocol.reason_codes import VerificationStatus
from basehealth_protocol.registry import RequirementRegistry
from basehealth_protocol.schemas import PaymentPayload, PaymentRequirement
from basehealth_protocol.verifier import VerificationContext, VerificationResult, VerifierSet

from .models import (
    ALLOWED_TRANSITIONS,
    CheckoutSession,
    CheckoutState,
    ProofAttempt,
    Receipt,
    SessionKind,
    WalletBinding,
)
from .sessions import SessionStore

logger = logging.getLogger(__name__)

EXHAUSTED_REASON = "verification_attempts_exhausted"
PRINCIPAL_MISMATCH_REASON = "principal_mismatch"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def settle_session_id(network: str, payment_id: str) -> str:
    """Deterministic session id for the stateless settle path."""
    digest = hashlib.sha256(f"{network}:{payment_id}".encode()).hexdigest()
    return f"stl_{digest[:32]}"


class CheckoutMachine:
    """Single source of truth for where a purchase attempt stands."""

    def __init__(
        self,
        registry: RequirementRegistry,
        verifiers: VerifierSet,
        ledger: LedgerStore,
        sessions: SessionStore,
        *,
        x402_version: int = 1,
        max_verification_attempts: int = 5,
        max_retries: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._registry = registry
        self._verifiers = verifiers
        self._ledger = ledger
        self._sessions = sessions
        self._version = x402_version
        self._max_attempts = max_verification_attempts
        self._max_retries = max_retries
        self._clock = clock or _utcnow
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        principal: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> CheckoutSession:
        session = CheckoutSession(principal=normalize_principal(principal))
        if session_id:
            session.session_id = session_id
        async with self._lock_for(session.session_id):
            existing = await self._sessions.get(session.session_id)
            if existing is not None:
                raise InvalidTransition(
                    existing.state.value,
                    "create_session",
                    f"Session {session.session_id} already exists",
                )
            set_payment_context(session_id=session.session_id)
            await self._sessions.save(session)
        logger.info("Checkout session %s created", session.session_id)
        return session

    async def get_session(self, session_id: str) -> CheckoutSession:
        session = await self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def quote(
        self,
        session_id: str,
        resource_id: str,
        network: Optional[str] = None,
    ) -> CheckoutSession:
        """idle -> quote_ready. Unknown resources leave the session idle."""
        async with self._lock_for(session_id):
            session = await self._load(session_id, "quote", CheckoutState.IDLE)
            requirement = self._registry.get_requirement(resource_id, network)
            self._apply_quote(session, requirement, self._clock())
            return await self._sessions.save(session)

    async def connect_wallet(
        self,
        session_id: str,
        scheme: str,
        network: str,
        address: Optional[str] = None,
    ) -> CheckoutSession:
        """quote_ready -> wallet_ready when the signer can pay the quote."""
        async with self._lock_for(session_id):
            session = await self._load(session_id, "connect_wallet", CheckoutState.QUOTE_READY)
            self._apply_wallet(session, scheme, network, address)
            return await self._sessions.save(session)

    async def submit_proof(self, session_id: str, payment_header: str) -> CheckoutSession:
        """wallet_ready -> awaiting_confirm. Nothing is verified yet."""
        async with self._lock_for(session_id):
            session = await self._load(session_id, "submit_proof", CheckoutState.WALLET_READY)
            self._apply_proof(session, payment_header, self._clock())
            return await self._sessions.save(session)

    async def confirm(self, session_id: str) -> CheckoutSession:
        """Decode, verify and record the submitted proof.

        Callable again while the session is ``tx_pending`` to re-verify a
        proof that was pending or hit a network error.
        """
        async with self._lock_for(session_id):
            session = await self._load(
                session_id,
                "confirm",
                CheckoutState.AWAITING_CONFIRM,
                CheckoutState.TX_PENDING,
            )
            await self._advance(session, self._clock())
            return await self._sessions.save(session)

    async def retry(self, session_id: str) -> CheckoutSession:
        """failed -> quote_ready with a fresh quote for the same resource."""
        async with self._lock_for(session_id):
            session = await self._load(session_id, "retry", CheckoutState.FAILED)
            if session.retry_count >= self._max_retries:
                raise InvalidTransition(
                    session.state.value,
                    "retry",
                    f"Retry limit of {self._max_retries} reached",
                )
            requirement = self._registry.get_requirement(
                session.resource_id,
                session.requirement.network if session.requirement else None,
            )
            session.retry_count += 1
            session.wallet = None
            session.payment_header = None
            session.payment_id = None
            session.verification_attempts = 0
            self._apply_quote(session, requirement, self._clock())
            logger.info("Session %s retry %d/%d", session_id, session.retry_count, self._max_retries)
            return await self._sessions.save(session)

    async def settle(
        self,
        resource_id: str,
        payment_header: str,
        requirement: Optional[PaymentRequirement] = None,
    ) -> CheckoutSession:
        """Stateless settlement of one proof.

        The session id is derived from the payment id, so presenting the
        same proof again returns the stored session (and its receipt)
        instead of granting twice.

        Raises:
            ProtocolError: the header is malformed or does not match an
                offered requirement.
            AlreadyProcessed: the proof already settled another resource.
        """
        payload = decode_payment_payload(payment_header)
        check_version(payload, self._version)
        if requirement is None:
            requirement = self._registry.select_requirement(resource_id, payload.scheme, payload.network)
        else:
            match_requirement(payload, requirement)
        payment_id = self._verifiers.payment_id(payload)
        session_id = settle_session_id(payload.network, payment_id)

        async with self._lock_for(session_id):
            set_payment_context(session_id=session_id, payment_id=payment_id)
            now = self._clock()
            session = await self._sessions.get(session_id)
            if session is None:
                session = self._fresh_settle(session_id, requirement, payload, payment_header, now)
            elif session.resource_id != requirement.resource:
                raise AlreadyProcessed(payment_id)
            elif session.state is CheckoutState.FAILED and session.payment_header != payment_header:
                # a failed session never wrote the ledger; a different header
                # for the same payment gets a fresh evaluation
                logger.info("Re-evaluating failed proof %s with a new header", payment_id)
                session = self._fresh_settle(session_id, requirement, payload, payment_header, now)
            elif session.is_terminal:
                logger.info("Replayed proof %s, returning stored session", payment_id)
                return session

            await self._advance(session, now)
            return await self._sessions.save(session)

    async def verify(self, payment_header: str, requirement: PaymentRequirement) -> VerificationResult:
        """Judge a proof against ``requirement`` without recording anything.

        Raises:
            ProtocolError: the header is malformed or does not match the
                requirement.
        """
        payload = decode_payment_payload(payment_header)
        check_version(payload, self._version)
        match_requirement(payload, requirement)
        return await self._verifiers.verify(payload, requirement, VerificationContext(now=self._clock()))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _load(self, session_id: str, operation: str, *allowed: CheckoutState) -> CheckoutSession:
        set_payment_context(session_id=session_id)
        session = await self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.state not in allowed:
            raise InvalidTransition(session.state.value, operation)
        return session

    def _transition(self, session: CheckoutSession, target: CheckoutState, operation: str) -> None:
        if target not in ALLOWED_TRANSITIONS[session.state]:
            raise InvalidTransition(session.state.value, operation)
        logger.info("Session %s: %s -> %s", session.session_id, session.state.value, target.value)
        session.state = target
        session.updated_at = self._clock()

    def _fail(self, session: CheckoutSession, reason: str, detail: Optional[str] = None) -> None:
        if session.payment_id and session.payment_id not in session.failed_payment_ids:
            session.failed_payment_ids.append(session.payment_id)
        attempt = session.current_attempt
        if attempt is not None:
            attempt.status = "failed"
            attempt.reason = detail or reason
        session.error = reason
        self._transition(session, CheckoutState.FAILED, "fail")
        logger.warning("Session %s failed: %s (%s)", session.session_id, reason, detail)

    def _fresh_settle(
        self,
        session_id: str,
        requirement: PaymentRequirement,
        payload: PaymentPayload,
        payment_header: str,
        now: datetime,
    ) -> CheckoutSession:
        session = CheckoutSession(session_id=session_id, kind=SessionKind.SETTLE)
        self._apply_quote(session, requirement, now)
        claimed = payload.payload.get("from")
        self._apply_wallet(
            session,
            payload.scheme,
            payload.network,
            claimed if isinstance(claimed, str) else None,
        )
        self._apply_proof(session, payment_header, now)
        return session

    def _apply_quote(self, session: CheckoutSession, requirement: PaymentRequirement, now: datetime) -> None:
        self._transition(session, CheckoutState.QUOTE_READY, "quote")
        session.resource_id = requirement.resource
        session.requirement = requirement
        session.quoted_at = now
        session.error = None

    def _apply_wallet(
        self,
        session: CheckoutSession,
        scheme: str,
        network: str,
        address: Optional[str],
    ) -> None:
        requirement = session.requirement
        if (scheme, network) != requirement.capability:
            raise SchemeNetworkMismatchError(scheme, network, expected=[requirement.capability])
        if not self._verifiers.supports(scheme, network):
            raise UnsupportedSchemeError(scheme, network)
        self._transition(session, CheckoutState.WALLET_READY, "connect_wallet")
        session.wallet = WalletBinding(scheme=scheme, network=network, address=address)
        if session.principal is None and address:
            session.principal = normalize_principal(address)

    def _apply_proof(self, session: CheckoutSession, payment_header: str, now: datetime) -> None:
        # Malformed proofs are accepted here and fail at confirm.
        payment_id = None
        try:
            payment_id = self._verifiers.payment_id(decode_payment_payload(payment_header))
        except ProtocolError:
            logger.debug("Session %s received an undecodable proof", session.session_id)
        if payment_id is not None and payment_id in session.failed_payment_ids:
            raise InvalidTransition(
                session.state.value,
                "submit_proof",
                f"Payment {payment_id} already failed in this session",
            )
        self._transition(session, CheckoutState.AWAITING_CONFIRM, "submit_proof")
        session.payment_header = payment_header
        session.attempts.append(ProofAttempt(payment_id=payment_id, submitted_at=now))

    async def _advance(self, session: CheckoutSession, now: datetime) -> None:
        requirement = session.requirement
        deadline = session.quoted_at + timedelta(seconds=requirement.max_timeout_seconds)
        if now > deadline:
            self._fail(session, VerificationStatus.EXPIRED.value, "payment window expired")
            return

        try:
            payload = self._decode(session, requirement)
            payment_id = self._verifiers.payment_id(payload)
        except ProtocolError as exc:
            self._fail(session, exc.reason)
            return

        if session.state is CheckoutState.AWAITING_CONFIRM:
            session.payment_id = payment_id
            set_payment_context(payment_id=payment_id)
            existing = await self._ledger.get(session.payment_id)
            if existing is not None and existing.session_id != session.session_id:
                self._fail(session, AlreadyProcessed.reason, "payment already processed")
                return
            self._transition(session, CheckoutState.TX_PENDING, "confirm")

        session.verification_attempts += 1
        context = VerificationContext(now=now, issued_at=session.quoted_at)
        result = await self._verifiers.verify(payload, requirement, context)
        attempt = session.current_attempt

        if result.is_valid:
            attempt.status = result.status.value
            self._transition(session, CheckoutState.CONFIRMED, "confirm")
            await self._record(session, result, now)
            return

        if result.retryable:
            attempt.status = result.status.value
            attempt.reason = result.invalid_reason
            if session.kind is SessionKind.CHECKOUT and session.verification_attempts >= self._max_attempts:
                self._fail(session, EXHAUSTED_REASON, result.invalid_reason)
                return
            self._transition(session, CheckoutState.TX_PENDING, "confirm")
            return

        self._fail(session, result.status.value, result.invalid_reason)

    def _decode(self, session: CheckoutSession, requirement: PaymentRequirement) -> PaymentPayload:
        payload = decode_payment_payload(session.payment_header)
        check_version(payload, self._version)
        match_requirement(payload, requirement)
        return payload

    async def _record(self, session: CheckoutSession, result: VerificationResult, now: datetime) -> None:
        requirement = session.requirement
        sender = normalize_principal(result.sender)
        if session.principal is not None and session.principal != sender:
            logger.info("Payment %s came from %s, session claimed %s", result.payment_id, sender, session.principal)
            self._fail(session, PRINCIPAL_MISMATCH_REASON, "payment sender does not match the claimed payer")
            return
        session.principal = sender
        metadata = {}
        if result.settled_at is not None:
            metadata["onchain_time"] = result.settled_at.isoformat()
        try:
            entry = await self._ledger.mark_processed(
                result.payment_id,
                session.order_id,
                result.sender,
                result.amount,
                network=requirement.network,
                resource=requirement.resource,
                service_type=self._registry.service_type(requirement.resource),
                principal=session.principal,
                session_id=session.session_id,
                required_amount=requirement.amount_units,
                settled_at=now,
                metadata=metadata,
            )
        except AlreadyProcessed as exc:
            entry = exc.existing
            if entry is None or entry.session_id != session.session_id:
                self._fail(session, exc.reason, "payment already processed")
                return
            logger.info("Payment %s already recorded by this session", result.payment_id)

        session.receipt = Receipt(
            receipt_id=f"rcpt_{uuid.uuid4().hex[:16]}",
            session_id=session.session_id,
            order_id=entry.order_id,
            payment_id=entry.payment_id,
            network=entry.network,
            resource=entry.resource,
            sender=entry.sender,
            amount=entry.amount,
            required_amount=entry.required_amount,
            surplus=entry.surplus,
            settled_at=entry.settled_at,
        )
        self._transition(session, CheckoutState.RECEIPT, "confirm")


__all__ = ["CheckoutMachine", "settle_session_id", "EXHAUSTED_REASON", "PRINCIPAL_MISMATCH_REASON"]
