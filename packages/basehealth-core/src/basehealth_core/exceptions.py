"""Unified exception hierarchy for BaseHealth payments.

All payment-gate exceptions inherit from PaymentGateError, enabling:
- Consistent error handling across packages
- HTTP status code mapping in the API layer
- Structured error responses with machine-readable codes

Usage:
    from basehealth_core.exceptions import (
        ProtocolError,
        AlreadyProcessed,
        ConfigError,
    )

    try:
        payload = decode_payment_payload(header)
    except ProtocolError as e:
        return {"error": e.reason}

All exceptions have:
- error_code: Machine-readable error code (e.g., "DECODE_ERROR")
- http_status: HTTP status code for API responses
- reason: Short reason string surfaced to clients as ``invalidReason``
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class PaymentGateError(Exception):
    """Base exception for all payment-gate errors."""

    error_code: str = "PAYMENT_GATE_ERROR"
    http_status: int = 500
    reason: str = "internal_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if reason:
            self.reason = reason
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "reason": self.reason,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Protocol Errors (client input problems)
# =============================================================================

class ProtocolError(PaymentGateError):
    """Malformed or unsupported payment payload."""

    error_code = "PROTOCOL_ERROR"
    http_status = 400
    reason = "invalid_payload"


class DecodeError(ProtocolError):
    """A header or body could not be decoded into a protocol object."""

    error_code = "DECODE_ERROR"
    reason = "invalid_payment_header"


class UnsupportedVersionError(ProtocolError):
    """x402Version differs from the version this server speaks."""

    error_code = "UNSUPPORTED_VERSION"
    reason = "unsupported version"

    def __init__(self, received: Any, supported: int) -> None:
        super().__init__(
            f"x402Version {received!r} is not supported (expected {supported})",
            details={"received": received, "supported": supported},
        )


class SchemeNetworkMismatchError(ProtocolError):
    """The payload claims a scheme/network the requirement does not offer."""

    error_code = "SCHEME_NETWORK_MISMATCH"
    reason = "scheme/network mismatch"

    def __init__(
        self,
        scheme: str,
        network: str,
        expected: Optional[list[tuple[str, str]]] = None,
    ) -> None:
        details: dict[str, Any] = {"scheme": scheme, "network": network}
        if expected:
            details["expected"] = [
                {"scheme": s, "network": n} for s, n in expected
            ]
        super().__init__(
            f"Payment for {scheme}/{network} does not match the requirement",
            details=details,
        )


class UnsupportedSchemeError(ProtocolError):
    """No verifier is registered for the (scheme, network) pair."""

    error_code = "UNSUPPORTED_SCHEME"
    reason = "unsupported scheme/network"

    def __init__(self, scheme: str, network: str) -> None:
        super().__init__(
            f"No verifier registered for {scheme}/{network}",
            details={"scheme": scheme, "network": network},
        )


# =============================================================================
# Verification outcomes
# =============================================================================

class VerificationPending(PaymentGateError):
    """The proof exists but is not yet confirmed. Retry shortly."""

    error_code = "VERIFICATION_PENDING"
    http_status = 402
    reason = "not yet confirmed, please retry"


class VerificationFailed(PaymentGateError):
    """The proof can never satisfy the requirement."""

    error_code = "VERIFICATION_FAILED"
    http_status = 402
    reason = "verification_failed"


class NetworkError(PaymentGateError):
    """Upstream chain node or card processor is unreachable."""

    error_code = "NETWORK_ERROR"
    http_status = 502
    reason = "upstream unavailable, please retry"


# =============================================================================
# Ledger / state errors
# =============================================================================

class AlreadyProcessed(PaymentGateError):
    """The payment id is already recorded in the ledger."""

    error_code = "PAYMENT_ALREADY_PROCESSED"
    http_status = 409
    reason = "payment_already_processed"

    def __init__(self, payment_id: str, existing: Any = None) -> None:
        super().__init__(
            f"Payment {payment_id} has already been processed",
            details={"payment_id": payment_id},
        )
        self.payment_id = payment_id
        self.existing = existing


class NotFoundError(PaymentGateError):
    """Requested object not found."""

    error_code = "NOT_FOUND"
    http_status = 404
    reason = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class RequirementNotFound(NotFoundError):
    error_code = "REQUIREMENT_NOT_FOUND"
    reason = "unknown_resource"

    def __init__(self, resource_id: str) -> None:
        super().__init__("Resource", resource_id)


class SessionNotFound(NotFoundError):
    error_code = "SESSION_NOT_FOUND"
    reason = "unknown_session"

    def __init__(self, session_id: str) -> None:
        super().__init__("Checkout session", session_id)


class InvalidTransition(PaymentGateError):
    """A checkout operation is not allowed from the session's current state."""

    error_code = "INVALID_TRANSITION"
    http_status = 409
    reason = "invalid_transition"

    def __init__(self, current: str, operation: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Cannot {operation} from state '{current}'",
            details={"state": current, "operation": operation},
        )


class WebhookSignatureError(PaymentGateError):
    """Webhook signature is missing, stale or does not match."""

    error_code = "WEBHOOK_SIGNATURE_INVALID"
    http_status = 400
    reason = "invalid_signature"


class ConfigError(PaymentGateError):
    """Invalid configuration detected at startup."""

    error_code = "CONFIG_ERROR"
    http_status = 500
    reason = "misconfigured"


__all__ = [
    "PaymentGateError",
    "ProtocolError",
    "DecodeError",
    "UnsupportedVersionError",
    "SchemeNetworkMismatchError",
    "UnsupportedSchemeError",
    "VerificationPending",
    "VerificationFailed",
    "NetworkError",
    "AlreadyProcessed",
    "NotFoundError",
    "RequirementNotFound",
    "SessionNotFound",
    "InvalidTransition",
    "WebhookSignatureError",
    "ConfigError",
]
