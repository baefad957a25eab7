"""Stripe webhook consumer.

Design:
- Verify the provider signature first (fail closed).
- Skip events whose id the ledger has already recorded.
- Record the event id only AFTER the handler succeeds.

Webhooks never create ledger entries: a card payment is only recorded by
the checkout machine after its own verification. Events for payments the
ledger does not know yet are logged and ignored.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from basehealth_core.exceptions import WebhookSignatureError
from basehealth_ledger.store import LedgerStore

from .connectors.stripe import StripeConnector

logger = logging.getLogger(__name__)

EVENT_SOURCE = "stripe"

# event type -> metadata written onto the ledger entry
HANDLED_EVENTS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "payment_failed",
    "charge.refunded": "refunded",
    "checkout.session.completed": "checkout_completed",
}


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str  # processed | duplicate | ignored | unknown_payment
    payment_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "status": self.status,
            "paymentId": self.payment_id,
        }


def _payment_intent_id(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    if event_type.startswith("payment_intent."):
        return obj.get("id")
    # charges and checkout sessions reference the intent
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


class StripeWebhookConsumer:
    """Applies Stripe events to auxiliary ledger metadata."""

    def __init__(self, connector: StripeConnector, ledger: LedgerStore) -> None:
        self._connector = connector
        self._ledger = ledger

    async def handle(
        self,
        payload: bytes,
        signature_header: str,
        now: Optional[int] = None,
    ) -> WebhookOutcome:
        """Verify, dedupe and apply one webhook delivery.

        Raises:
            WebhookSignatureError: signature missing, stale or invalid, or
                the body is not a Stripe event.
        """
        self._connector.verify_webhook(payload, signature_header, now=now)

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("Webhook body is not valid JSON") from exc
        if not isinstance(event, dict) or not event.get("id"):
            raise WebhookSignatureError("Webhook body is not a Stripe event")

        event_id = event["id"]
        event_type = event.get("type", "")

        if await self._ledger.has_event(EVENT_SOURCE, event_id):
            logger.info("Duplicate Stripe event %s (%s) skipped", event_id, event_type)
            return WebhookOutcome(event_id, event_type, "duplicate")

        outcome = await self._apply(event_id, event_type, event)
        await self._ledger.record_event(EVENT_SOURCE, event_id)
        return outcome

    async def _apply(self, event_id: str, event_type: str, event: Dict[str, Any]) -> WebhookOutcome:
        stripe_status = HANDLED_EVENTS.get(event_type)
        if stripe_status is None:
            logger.debug("Ignoring Stripe event %s of type %s", event_id, event_type)
            return WebhookOutcome(event_id, event_type, "ignored")

        obj = (event.get("data") or {}).get("object") or {}
        payment_id = _payment_intent_id(event_type, obj)
        if not payment_id:
            logger.warning("Stripe event %s (%s) has no payment intent", event_id, event_type)
            return WebhookOutcome(event_id, event_type, "ignored")

        metadata: Dict[str, Any] = {
            "stripe_status": stripe_status,
            "stripe_event_id": event_id,
        }
        if event_type == "charge.refunded":
            metadata["amount_refunded"] = obj.get("amount_refunded")
        if event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            metadata["failure_code"] = error.get("code")

        if not await self._ledger.annotate(payment_id, metadata):
            logger.info(
                "Stripe event %s references payment %s not in the ledger; ignored",
                event_id,
                payment_id,
            )
            return WebhookOutcome(event_id, event_type, "unknown_payment", payment_id=payment_id)

        logger.info("Applied Stripe event %s (%s) to payment %s", event_id, event_type, payment_id)
        return WebhookOutcome(event_id, event_type, "processed", payment_id=payment_id, details=metadata)


__all__ = ["StripeWebhookConsumer", "WebhookOutcome", "HANDLED_EVENTS"]
