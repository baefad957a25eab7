"""Stripe connector and card payment-intent verifier."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from basehealth_core.exceptions import DecodeError, WebhookSignatureError
from basehealth_protocol.reason_codes import VerificationStatus
from basehealth_protocol.schemas import PaymentPayload, PaymentRequirement
from basehealth_protocol.verifier import (
    PaymentVerifier,
    VerificationContext,
    VerificationResult,
    check_expiry,
)

logger = logging.getLogger(__name__)

INTENT_ID_RE = re.compile(r"^pi_[A-Za-z0-9_]+$")

# Stripe's default replay window for signed webhooks
WEBHOOK_TOLERANCE_SECONDS = 300


class StripeConnector:
    """Thin Stripe REST client for payment intents and webhook signatures."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.stripe.com/v1",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            base_url=self.api_base,
            auth=(api_key, ""),
            timeout=timeout,
        )

    async def retrieve_payment_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a payment intent, or None when Stripe does not know it."""
        response = await self._client.get(f"/payment_intents/{intent_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        now: Optional[int] = None,
    ) -> None:
        """Check a ``Stripe-Signature`` header (``t=...,v1=...``).

        Raises:
            WebhookSignatureError: no secret configured, malformed header,
                stale timestamp or no matching ``v1`` signature.
        """
        if not self.webhook_secret:
            raise WebhookSignatureError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        timestamp = ""
        candidates: List[str] = []
        for part in signature.split(","):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                timestamp = value
            elif key == "v1":
                candidates.append(value)

        if not timestamp.isdigit() or not candidates:
            raise WebhookSignatureError("Malformed Stripe-Signature header")

        current = now if now is not None else int(time.time())
        if abs(current - int(timestamp)) > WEBHOOK_TOLERANCE_SECONDS:
            raise WebhookSignatureError("Stripe webhook timestamp outside tolerance")

        signed_payload = timestamp.encode() + b"." + payload
        expected = hmac.new(
            self.webhook_secret.encode(),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise WebhookSignatureError("Stripe webhook signature mismatch")

    async def close(self):
        """Close HTTP client."""
        await self._client.aclose()


class StripeIntentVerifier(PaymentVerifier):
    """Verifies card payments by payment-intent id.

    Only ``succeeded`` intents are accepted. In-flight statuses are
    reported as pending, ``canceled`` as a failed transaction.
    """

    scheme = "intent"

    def __init__(self, connector: StripeConnector, network: str = "stripe") -> None:
        self.connector = connector
        self.network = network

    def payment_id(self, payload: PaymentPayload) -> str:
        intent_id = payload.payload.get("paymentIntentId")
        if not isinstance(intent_id, str) or not INTENT_ID_RE.match(intent_id):
            raise DecodeError("paymentIntentId must be a Stripe payment intent id", reason="invalid_payment_intent")
        return intent_id

    def _fail(self, intent_id: str, status: VerificationStatus, detail: Optional[str] = None, **fields: Any):
        return VerificationResult.failure(status, intent_id, self.network, detail, **fields)

    async def verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        context: VerificationContext,
    ) -> VerificationResult:
        intent_id = self.payment_id(payload)
        try:
            intent = await self.connector.retrieve_payment_intent(intent_id)
        except httpx.TimeoutException:
            logger.warning("Stripe timeout retrieving %s", intent_id)
            return self._fail(intent_id, VerificationStatus.NETWORK_ERROR, "timeout")
        except httpx.TransportError as exc:
            logger.warning("Stripe unreachable retrieving %s: %s", intent_id, exc)
            return self._fail(intent_id, VerificationStatus.NETWORK_ERROR, "unreachable")

        if intent is None:
            return self._fail(intent_id, VerificationStatus.NOT_FOUND)

        status = intent.get("status")
        if status == "canceled":
            return self._fail(intent_id, VerificationStatus.TRANSACTION_FAILED, "payment intent canceled")
        if status != "succeeded":
            return self._fail(intent_id, VerificationStatus.PENDING, f"payment intent is {status}")

        currency = str(intent.get("currency", "")).lower()
        if currency != requirement.currency.lower():
            return self._fail(
                intent_id,
                VerificationStatus.CURRENCY_MISMATCH,
                f"paid in {currency}, required {requirement.currency}",
            )

        metadata = intent.get("metadata") or {}
        sender = metadata.get("principal") or intent.get("customer")
        resource = metadata.get("resource")
        if resource and resource != requirement.resource:
            return self._fail(intent_id, VerificationStatus.RECIPIENT_MISMATCH, "intent is for another resource")

        amount = int(intent.get("amount_received") or intent["amount"])
        if amount < requirement.amount_units:
            return self._fail(
                intent_id,
                VerificationStatus.AMOUNT_MISMATCH,
                f"paid {amount}, required {requirement.amount}",
                amount=amount,
                sender=sender,
            )

        created = None
        if intent.get("created") is not None:
            created = datetime.fromtimestamp(int(intent["created"]), tz=timezone.utc)
        expired = check_expiry(requirement, context, created)
        if expired:
            return self._fail(intent_id, VerificationStatus.EXPIRED, expired)

        logger.info("Verified Stripe intent %s: %s %s", intent_id, amount, currency)
        return VerificationResult.valid(
            intent_id,
            self.network,
            sender=sender,
            amount=amount,
            recipient=requirement.recipient,
            settled_at=created,
        )

    async def aclose(self) -> None:
        await self.connector.close()


__all__ = [
    "StripeConnector",
    "StripeIntentVerifier",
    "INTENT_ID_RE",
    "WEBHOOK_TOLERANCE_SECONDS",
]
