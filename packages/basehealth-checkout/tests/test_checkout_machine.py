"""Tests for the checkout state machine."""
from __future__ import annotations

import asyncio

import pytest

from basehealth_checkout.machine import EXHAUSTED_REASON, PRINCIPAL_MISMATCH_REASON, settle_session_id
from basehealth_checkout.models import CheckoutState, SessionKind
from basehealth_core.exceptions import (
    AlreadyProcessed,
    InvalidTransition,
    RequirementNotFound,
    SchemeNetworkMismatchError,
    SessionNotFound,
    UnsupportedVersionError,
)
from basehealth_protocol.reason_codes import VerificationStatus

SENDER = "0x1212121212121212121212121212121212121212"
ATTACKER = "0xdeaddeaddeaddeaddeaddeaddeaddeaddeaddead"


async def _ready(machine, make_header, tx_hash="0xtx1", resource="ai-consult", principal=None):
    """Create a session and take it to awaiting_confirm on base."""
    session = await machine.create_session(principal=principal)
    await machine.quote(session.session_id, resource, "base")
    await machine.connect_wallet(session.session_id, "exact", "base", SENDER)
    return await machine.submit_proof(session.session_id, make_header(tx_hash))


async def _fail_once(machine, make_header, clock, session_id, tx_hash):
    await machine.connect_wallet(session_id, "exact", "base", SENDER)
    await machine.submit_proof(session_id, make_header(tx_hash))
    clock.advance(301)
    return await machine.confirm(session_id)


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_checkout_reaches_receipt(self, machine, make_header, ledger, clock):
        session = await machine.create_session()
        assert session.state is CheckoutState.IDLE

        session = await machine.quote(session.session_id, "ai-consult", "base")
        assert session.state is CheckoutState.QUOTE_READY
        assert session.requirement.amount == "500000"
        assert session.quoted_at == clock.now

        session = await machine.connect_wallet(session.session_id, "exact", "base", SENDER)
        assert session.state is CheckoutState.WALLET_READY
        assert session.principal == SENDER

        session = await machine.submit_proof(session.session_id, make_header("0xtx1"))
        assert session.state is CheckoutState.AWAITING_CONFIRM
        assert session.attempts[0].payment_id == "0xtx1"

        clock.advance(10)
        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.RECEIPT
        assert session.receipt.payment_id == "0xtx1"
        assert session.receipt.amount == 500000
        assert session.receipt.surplus == 0
        assert session.receipt.order_id == session.order_id
        assert session.attempts[0].status == "valid"

        entry = await ledger.get("0xtx1")
        assert entry.session_id == session.session_id
        assert entry.principal == SENDER
        assert entry.service_type == "ai-consult"
        assert entry.settled_at == clock.now
        assert "onchain_time" in entry.metadata

    @pytest.mark.asyncio
    async def test_state_is_persisted(self, machine, make_header, sessions):
        session = await _ready(machine, make_header)
        await machine.confirm(session.session_id)

        stored = await sessions.get(session.session_id)
        assert stored.state is CheckoutState.RECEIPT
        assert (await machine.get_session(session.session_id)).receipt == stored.receipt

    @pytest.mark.asyncio
    async def test_surplus_is_kept_on_receipt(self, machine, make_header, base_verifier):
        base_verifier.amount = 600000
        session = await _ready(machine, make_header)
        session = await machine.confirm(session.session_id)
        assert session.receipt.surplus == 100000
        assert session.receipt.required_amount == 500000

    @pytest.mark.asyncio
    async def test_principal_matching_the_sender_is_kept(self, machine, make_header, ledger):
        session = await _ready(machine, make_header, principal=SENDER)
        session = await machine.confirm(session.session_id)
        assert session.state is CheckoutState.RECEIPT
        assert (await ledger.get("0xtx1")).principal == SENDER


class TestPrincipalBinding:

    @pytest.mark.asyncio
    async def test_principal_at_creation_must_match_sender(self, machine, make_header, ledger):
        session = await _ready(machine, make_header, principal="user-42")
        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.FAILED
        assert session.error == PRINCIPAL_MISMATCH_REASON
        assert session.receipt is None
        assert await ledger.get("0xtx1") is None

    @pytest.mark.asyncio
    async def test_wallet_of_someone_else_cannot_claim_payment(self, machine, make_header, ledger):
        session = await machine.create_session()
        await machine.quote(session.session_id, "ai-consult", "base")
        await machine.connect_wallet(session.session_id, "exact", "base", ATTACKER)
        await machine.submit_proof(session.session_id, make_header("0xtx1"))
        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.FAILED
        assert session.error == PRINCIPAL_MISMATCH_REASON
        assert await ledger.get("0xtx1") is None

        own = await _ready(machine, make_header)
        own = await machine.confirm(own.session_id)
        assert own.state is CheckoutState.RECEIPT
        assert (await ledger.get("0xtx1")).principal == SENDER

    @pytest.mark.asyncio
    async def test_settle_with_false_payer_claim(self, machine, make_header, ledger, base_verifier):
        claimed = await machine.settle("chat-assistant-pass", make_header("0xpayertx", **{"from": ATTACKER}))

        assert claimed.state is CheckoutState.FAILED
        assert claimed.error == PRINCIPAL_MISMATCH_REASON
        assert await ledger.get("0xpayertx") is None

        again = await machine.settle("chat-assistant-pass", make_header("0xpayertx", **{"from": ATTACKER}))
        assert again.state is CheckoutState.FAILED
        assert base_verifier.calls == 1

        paid = await machine.settle("chat-assistant-pass", make_header("0xpayertx"))
        assert paid.session_id == claimed.session_id
        assert paid.state is CheckoutState.RECEIPT
        assert paid.principal == SENDER
        assert (await ledger.get("0xpayertx")).principal == SENDER


class TestInvalidOperations:

    @pytest.mark.asyncio
    async def test_unknown_session(self, machine):
        with pytest.raises(SessionNotFound):
            await machine.get_session("cs_missing")
        with pytest.raises(SessionNotFound):
            await machine.confirm("cs_missing")

    @pytest.mark.asyncio
    async def test_duplicate_session_id(self, machine):
        await machine.create_session(session_id="cs_fixed")
        with pytest.raises(InvalidTransition):
            await machine.create_session(session_id="cs_fixed")

    @pytest.mark.asyncio
    async def test_out_of_order_operations(self, machine, make_header):
        session = await machine.create_session()
        with pytest.raises(InvalidTransition):
            await machine.confirm(session.session_id)
        with pytest.raises(InvalidTransition):
            await machine.submit_proof(session.session_id, make_header())
        with pytest.raises(InvalidTransition):
            await machine.retry(session.session_id)

    @pytest.mark.asyncio
    async def test_unknown_resource_leaves_session_idle(self, machine):
        session = await machine.create_session()
        with pytest.raises(RequirementNotFound):
            await machine.quote(session.session_id, "brain-transplant")
        assert (await machine.get_session(session.session_id)).state is CheckoutState.IDLE

    @pytest.mark.asyncio
    async def test_wallet_on_other_network_is_rejected(self, machine):
        session = await machine.create_session()
        await machine.quote(session.session_id, "ai-consult", "base")
        with pytest.raises(SchemeNetworkMismatchError):
            await machine.connect_wallet(session.session_id, "exact", "solana")
        assert (await machine.get_session(session.session_id)).state is CheckoutState.QUOTE_READY

    @pytest.mark.asyncio
    async def test_receipt_is_terminal(self, machine, make_header):
        session = await _ready(machine, make_header)
        await machine.confirm(session.session_id)
        with pytest.raises(InvalidTransition):
            await machine.confirm(session.session_id)
        with pytest.raises(InvalidTransition):
            await machine.retry(session.session_id)


class TestVerificationOutcomes:

    @pytest.mark.asyncio
    async def test_pending_then_valid(self, machine, make_header, base_verifier):
        base_verifier.script = [VerificationStatus.PENDING]
        session = await _ready(machine, make_header)

        session = await machine.confirm(session.session_id)
        assert session.state is CheckoutState.TX_PENDING
        assert session.verification_attempts == 1
        assert session.current_attempt.status == "pending"
        assert session.current_attempt.reason == "not yet confirmed, please retry"

        session = await machine.confirm(session.session_id)
        assert session.state is CheckoutState.RECEIPT
        assert base_verifier.calls == 2

    @pytest.mark.asyncio
    async def test_retryable_outcomes_are_bounded(self, machine, make_header, base_verifier):
        base_verifier.script = [VerificationStatus.NETWORK_ERROR] * 5
        session = await _ready(machine, make_header)

        for _ in range(2):
            session = await machine.confirm(session.session_id)
            assert session.state is CheckoutState.TX_PENDING
        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.FAILED
        assert session.error == EXHAUSTED_REASON
        assert base_verifier.calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            VerificationStatus.AMOUNT_MISMATCH,
            VerificationStatus.RECIPIENT_MISMATCH,
            VerificationStatus.NOT_FOUND,
            VerificationStatus.TRANSACTION_FAILED,
        ],
    )
    async def test_terminal_outcomes_fail_the_session(self, machine, make_header, base_verifier, ledger, status):
        base_verifier.script = [status]
        session = await _ready(machine, make_header)

        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.FAILED
        assert session.error == status.value
        assert session.failed_payment_ids == ["0xtx1"]
        assert session.current_attempt.status == "failed"
        assert await ledger.get("0xtx1") is None

    @pytest.mark.asyncio
    async def test_expired_quote_fails_without_verifying(self, machine, make_header, base_verifier, clock):
        session = await _ready(machine, make_header)
        clock.advance(301)

        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.FAILED
        assert session.error == "expired"
        assert base_verifier.calls == 0

    @pytest.mark.asyncio
    async def test_malformed_proof_fails_at_confirm(self, machine):
        session = await machine.create_session()
        await machine.quote(session.session_id, "ai-consult", "base")
        await machine.connect_wallet(session.session_id, "exact", "base")
        session = await machine.submit_proof(session.session_id, "not-a-header")
        assert session.state is CheckoutState.AWAITING_CONFIRM
        assert session.attempts[0].payment_id is None

        session = await machine.confirm(session.session_id)
        assert session.state is CheckoutState.FAILED
        assert session.error == "invalid_payment_header"

    @pytest.mark.asyncio
    async def test_version_mismatch_fails(self, machine, make_header):
        session = await machine.create_session()
        await machine.quote(session.session_id, "ai-consult", "base")
        await machine.connect_wallet(session.session_id, "exact", "base")
        await machine.submit_proof(session.session_id, make_header("0xtx9", version=2))

        session = await machine.confirm(session.session_id)
        assert session.state is CheckoutState.FAILED
        assert session.error == "unsupported version"

    @pytest.mark.asyncio
    async def test_proof_for_other_network_fails(self, machine, make_header, base_verifier, solana_verifier):
        session = await machine.create_session()
        await machine.quote(session.session_id, "ai-consult", "base")
        await machine.connect_wallet(session.session_id, "exact", "base")
        await machine.submit_proof(session.session_id, make_header("sig1", network="solana"))

        session = await machine.confirm(session.session_id)

        assert session.state is CheckoutState.FAILED
        assert session.error == "scheme/network mismatch"
        assert base_verifier.calls == 0
        assert solana_verifier.calls == 0


class TestRetry:

    @pytest.mark.asyncio
    async def test_retry_requotes_same_resource(self, machine, make_header, base_verifier, clock):
        base_verifier.script = [VerificationStatus.AMOUNT_MISMATCH]
        session = await _ready(machine, make_header)
        await machine.confirm(session.session_id)
        clock.advance(60)

        session = await machine.retry(session.session_id)

        assert session.state is CheckoutState.QUOTE_READY
        assert session.retry_count == 1
        assert session.resource_id == "ai-consult"
        assert session.requirement.network == "base"
        assert session.quoted_at == clock.now
        assert session.wallet is None
        assert session.payment_id is None
        assert session.error is None

    @pytest.mark.asyncio
    async def test_failed_proof_cannot_be_resubmitted(self, machine, make_header, base_verifier):
        base_verifier.script = [VerificationStatus.AMOUNT_MISMATCH]
        session = await _ready(machine, make_header)
        await machine.confirm(session.session_id)
        await machine.retry(session.session_id)
        await machine.connect_wallet(session.session_id, "exact", "base", SENDER)

        with pytest.raises(InvalidTransition):
            await machine.submit_proof(session.session_id, make_header("0xtx1"))

        await machine.submit_proof(session.session_id, make_header("0xtx2"))
        session = await machine.confirm(session.session_id)
        assert session.state is CheckoutState.RECEIPT
        assert session.receipt.payment_id == "0xtx2"
        assert [a.payment_id for a in session.attempts] == ["0xtx1", "0xtx2"]

    @pytest.mark.asyncio
    async def test_retry_limit(self, machine, make_header, clock):
        session = await machine.create_session()
        await machine.quote(session.session_id, "ai-consult", "base")
        await _fail_once(machine, make_header, clock, session.session_id, "0xtx1")

        await machine.retry(session.session_id)
        await _fail_once(machine, make_header, clock, session.session_id, "0xtx2")
        await machine.retry(session.session_id)
        session = await _fail_once(machine, make_header, clock, session.session_id, "0xtx3")
        assert session.retry_count == 2

        with pytest.raises(InvalidTransition, match="Retry limit of 2 reached"):
            await machine.retry(session.session_id)


class TestDoubleSpend:

    @pytest.mark.asyncio
    async def test_proof_used_by_another_session_is_rejected(self, machine, make_header, base_verifier):
        first = await _ready(machine, make_header, "0xtx1")
        await machine.confirm(first.session_id)

        second = await _ready(machine, make_header, "0xtx1")
        second = await machine.confirm(second.session_id)

        assert second.state is CheckoutState.FAILED
        assert second.error == "payment_already_processed"
        assert second.current_attempt.reason == "payment already processed"
        assert base_verifier.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_sessions_grant_once(self, machine, make_header, ledger):
        sessions = [await _ready(machine, make_header, "0xtx1") for _ in range(3)]

        results = await asyncio.gather(*(machine.confirm(s.session_id) for s in sessions))

        states = sorted(s.state.value for s in results)
        assert states == ["failed", "failed", "receipt"]
        winner = next(s for s in results if s.state is CheckoutState.RECEIPT)
        assert (await ledger.get("0xtx1")).session_id == winner.session_id

    @pytest.mark.asyncio
    async def test_concurrent_confirms_of_one_session(self, machine, make_header, base_verifier):
        session = await _ready(machine, make_header)

        results = await asyncio.gather(
            machine.confirm(session.session_id),
            machine.confirm(session.session_id),
            return_exceptions=True,
        )

        receipts = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, InvalidTransition)]
        assert len(receipts) == 1 and receipts[0].state is CheckoutState.RECEIPT
        assert len(errors) == 1
        assert base_verifier.calls == 1


class TestSettle:

    @pytest.mark.asyncio
    async def test_settle_issues_receipt(self, machine, make_header, ledger):
        session = await machine.settle("ai-consult", make_header("0xtx1", **{"from": SENDER}))

        assert session.session_id == settle_session_id("base", "0xtx1")
        assert session.kind is SessionKind.SETTLE
        assert session.state is CheckoutState.RECEIPT
        assert session.principal == SENDER
        assert (await ledger.get("0xtx1")).session_id == session.session_id

    @pytest.mark.asyncio
    async def test_replay_returns_stored_session(self, machine, make_header, base_verifier):
        first = await machine.settle("ai-consult", make_header("0xtx1"))
        second = await machine.settle("ai-consult", make_header("0xtx1"))

        assert second.session_id == first.session_id
        assert second.receipt.receipt_id == first.receipt.receipt_id
        assert base_verifier.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_replays_settle_once(self, machine, make_header, base_verifier, ledger):
        header = make_header("0xtx1")
        results = await asyncio.gather(*(machine.settle("ai-consult", header) for _ in range(5)))

        assert {r.receipt.receipt_id for r in results} == {results[0].receipt.receipt_id}
        assert base_verifier.calls == 1

    @pytest.mark.asyncio
    async def test_same_proof_for_other_resource(self, machine, make_header):
        await machine.settle("ai-consult", make_header("0xtx1"))
        with pytest.raises(AlreadyProcessed):
            await machine.settle("ai-diagnosis", make_header("0xtx1"))

    @pytest.mark.asyncio
    async def test_pending_settle_can_be_presented_again(self, machine, make_header, base_verifier):
        base_verifier.script = [VerificationStatus.PENDING] * 4
        header = make_header("0xtx1")

        for _ in range(4):
            session = await machine.settle("ai-consult", header)
            assert session.state is CheckoutState.TX_PENDING

        session = await machine.settle("ai-consult", header)
        assert session.state is CheckoutState.RECEIPT
        assert session.verification_attempts == 5

    @pytest.mark.asyncio
    async def test_settle_rejects_bad_version(self, machine, make_header):
        with pytest.raises(UnsupportedVersionError):
            await machine.settle("ai-consult", make_header(version=2))

    @pytest.mark.asyncio
    async def test_settle_rejects_network_mismatch(self, machine, make_header, registry):
        requirement = registry.get_requirement("ai-consult", "base")
        with pytest.raises(SchemeNetworkMismatchError):
            await machine.settle("ai-consult", make_header("sig1", network="solana"), requirement)

    @pytest.mark.asyncio
    async def test_settle_on_solana(self, machine, make_header, solana_verifier):
        session = await machine.settle("ai-consult", make_header("sig1", network="solana"))
        assert session.state is CheckoutState.RECEIPT
        assert session.receipt.network == "solana"
        assert session.requirement.amount == "500000"
        assert solana_verifier.calls == 1

    @pytest.mark.asyncio
    async def test_failed_settle_is_terminal(self, machine, make_header, base_verifier):
        base_verifier.script = [VerificationStatus.AMOUNT_MISMATCH]
        first = await machine.settle("ai-consult", make_header("0xtx1"))
        second = await machine.settle("ai-consult", make_header("0xtx1"))

        assert first.state is CheckoutState.FAILED
        assert second.state is CheckoutState.FAILED
        assert base_verifier.calls == 1
