"""Tests for the Stripe webhook consumer."""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone

import httpx
import pytest

from basehealth_checkout.connectors.stripe import StripeConnector
from basehealth_checkout.webhooks import EVENT_SOURCE, StripeWebhookConsumer
from basehealth_core.exceptions import WebhookSignatureError

SECRET = "whsec_test"
NOW = 1_772_366_400


def _deliver(event: dict, secret: str = SECRET):
    body = json.dumps(event).encode()
    digest = hmac.new(secret.encode(), f"{NOW}".encode() + b"." + body, hashlib.sha256).hexdigest()
    return body, f"t={NOW},v1={digest}"


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def consumer(ledger) -> StripeWebhookConsumer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    connector = StripeConnector("sk_test_123", webhook_secret=SECRET, http_client=client)
    return StripeWebhookConsumer(connector, ledger)


async def _record_card_payment(ledger, intent_id: str = "pi_123"):
    await ledger.mark_processed(
        intent_id,
        "ord_1",
        "user-42",
        50,
        network="stripe",
        resource="ai-consult",
        service_type="ai-consult",
        principal="user-42",
        session_id="cs_1",
        required_amount=50,
        settled_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_succeeded_event_annotates_entry(consumer, ledger):
    await _record_card_payment(ledger)
    body, header = _deliver(_event("evt_1", "payment_intent.succeeded", {"id": "pi_123"}))

    outcome = await consumer.handle(body, header, now=NOW)

    assert outcome.status == "processed"
    assert outcome.payment_id == "pi_123"
    entry = await ledger.get("pi_123")
    assert entry.metadata == {"stripe_status": "succeeded", "stripe_event_id": "evt_1"}
    assert await ledger.has_event(EVENT_SOURCE, "evt_1")


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(consumer, ledger):
    await _record_card_payment(ledger)
    body, header = _deliver(_event("evt_1", "payment_intent.succeeded", {"id": "pi_123"}))

    await consumer.handle(body, header, now=NOW)
    second = await consumer.handle(body, header, now=NOW)

    assert second.status == "duplicate"
    assert second.to_dict() == {
        "eventId": "evt_1",
        "eventType": "payment_intent.succeeded",
        "status": "duplicate",
        "paymentId": None,
    }


@pytest.mark.asyncio
async def test_refund_references_intent_through_charge(consumer, ledger):
    await _record_card_payment(ledger)
    charge = {"id": "ch_1", "payment_intent": "pi_123", "amount_refunded": 50}
    body, header = _deliver(_event("evt_2", "charge.refunded", charge))

    outcome = await consumer.handle(body, header, now=NOW)

    assert outcome.status == "processed"
    metadata = (await ledger.get("pi_123")).metadata
    assert metadata["stripe_status"] == "refunded"
    assert metadata["amount_refunded"] == 50


@pytest.mark.asyncio
async def test_failed_payment_records_failure_code(consumer, ledger):
    await _record_card_payment(ledger)
    intent = {"id": "pi_123", "last_payment_error": {"code": "card_declined"}}
    body, header = _deliver(_event("evt_3", "payment_intent.payment_failed", intent))

    await consumer.handle(body, header, now=NOW)

    assert (await ledger.get("pi_123")).metadata["failure_code"] == "card_declined"


@pytest.mark.asyncio
async def test_event_for_unknown_payment_never_creates_entry(consumer, ledger):
    body, header = _deliver(_event("evt_4", "payment_intent.succeeded", {"id": "pi_999"}))

    outcome = await consumer.handle(body, header, now=NOW)

    assert outcome.status == "unknown_payment"
    assert await ledger.get("pi_999") is None
    assert await ledger.has_event(EVENT_SOURCE, "evt_4")


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(consumer, ledger):
    body, header = _deliver(_event("evt_5", "customer.created", {"id": "cus_1"}))
    outcome = await consumer.handle(body, header, now=NOW)
    assert outcome.status == "ignored"


@pytest.mark.asyncio
async def test_bad_signature_records_nothing(consumer, ledger):
    body, header = _deliver(_event("evt_6", "payment_intent.succeeded", {"id": "pi_123"}), secret="whsec_other")

    with pytest.raises(WebhookSignatureError):
        await consumer.handle(body, header, now=NOW)
    assert not await ledger.has_event(EVENT_SOURCE, "evt_6")


@pytest.mark.asyncio
async def test_signed_body_that_is_not_an_event(consumer):
    body = b"[1, 2]"
    digest = hmac.new(SECRET.encode(), f"{NOW}".encode() + b"." + body, hashlib.sha256).hexdigest()
    with pytest.raises(WebhookSignatureError, match="not a Stripe event"):
        await consumer.handle(body, f"t={NOW},v1={digest}", now=NOW)
