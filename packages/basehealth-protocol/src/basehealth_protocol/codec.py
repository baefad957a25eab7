"""x402 wire codec.

Implements:
- ``X-PAYMENT`` header encode/decode (base64 of compact JSON)
- Requirement list encode/decode for the 402 body
- ``X-PAYMENT-RESPONSE`` settlement header
- Strict version and scheme/network negotiation

Decoding never lets a parser exception escape: every malformed input is
reported as ``DecodeError`` with a short reason.
"""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Iterable, List, Sequence

from pydantic import ValidationError

from basehealth_core.exceptions import (
    DecodeError,
    SchemeNetworkMismatchError,
    UnsupportedVersionError,
)

from .schemas import PaymentPayload, PaymentRequirement, SettlementResponse

X402_VERSION = 1

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# Proof headers are small; anything larger is rejected before parsing.
MAX_HEADER_BYTES = 16 * 1024


def _b64_json(data: Any) -> str:
    raw = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _parse_b64_json(header_value: str, what: str) -> Any:
    if not isinstance(header_value, str) or not header_value.strip():
        raise DecodeError(f"{what} header is empty", reason=f"invalid_{what}_header")
    if len(header_value) > MAX_HEADER_BYTES:
        raise DecodeError(f"{what} header is too large", reason=f"invalid_{what}_header")
    try:
        raw = base64.b64decode(header_value.strip(), validate=True)
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(
            f"{what} header is not base64-encoded JSON",
            reason=f"invalid_{what}_header",
            details={"cause": type(exc).__name__},
        ) from exc


def _validation_summary(exc: ValidationError) -> List[str]:
    return [".".join(str(p) for p in err["loc"]) or "<root>" for err in exc.errors()]


# --- payment payload -------------------------------------------------------

def encode_payment_payload(payload: PaymentPayload) -> str:
    """Encode a payload for the ``X-PAYMENT`` header."""
    return _b64_json(payload.to_wire())


def decode_payment_payload(header_value: str) -> PaymentPayload:
    """Decode an ``X-PAYMENT`` header.

    Raises:
        DecodeError: the header is not base64 JSON or lacks required fields.
        UnsupportedVersionError: ``x402Version`` is present but not an integer.
    """
    data = _parse_b64_json(header_value, "payment")
    if not isinstance(data, dict):
        raise DecodeError("payment header must encode a JSON object", reason="invalid_payment_header")

    version = data.get("x402Version", data.get("x402_version"))
    if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
        raise UnsupportedVersionError(version, X402_VERSION)

    try:
        return PaymentPayload.model_validate(data)
    except ValidationError as exc:
        raise DecodeError(
            "payment header is missing or has invalid fields",
            reason="invalid_payment_header",
            details={"fields": _validation_summary(exc)},
        ) from exc


# --- requirements ------------------------------------------------------------

def encode_requirements(requirements: Iterable[PaymentRequirement]) -> List[dict]:
    """Encode requirements as the JSON array returned with a 402."""
    return [req.to_wire() for req in requirements]


def decode_requirement(data: Any) -> PaymentRequirement:
    """Decode one requirement object from a JSON body."""
    if not isinstance(data, dict):
        raise DecodeError("payment requirement must be a JSON object", reason="invalid_requirement")
    try:
        return PaymentRequirement.model_validate(data)
    except ValidationError as exc:
        raise DecodeError(
            "payment requirement is missing or has invalid fields",
            reason="invalid_requirement",
            details={"fields": _validation_summary(exc)},
        ) from exc


def decode_requirements(data: Any) -> List[PaymentRequirement]:
    if not isinstance(data, list):
        raise DecodeError("payment requirements must be a JSON array", reason="invalid_requirement")
    return [decode_requirement(item) for item in data]


# --- settlement --------------------------------------------------------------

def encode_settlement_header(response: SettlementResponse) -> str:
    """Encode a settlement result for the ``X-PAYMENT-RESPONSE`` header."""
    return _b64_json(response.to_wire())


def decode_settlement_header(header_value: str) -> SettlementResponse:
    data = _parse_b64_json(header_value, "settlement")
    try:
        return SettlementResponse.model_validate(data)
    except ValidationError as exc:
        raise DecodeError(
            "settlement header has invalid fields",
            reason="invalid_settlement_header",
            details={"fields": _validation_summary(exc)},
        ) from exc


# --- negotiation -------------------------------------------------------------

def check_version(payload: PaymentPayload, supported: int = X402_VERSION) -> None:
    """Reject any payload whose version is not exactly ``supported``."""
    if payload.x402_version != supported:
        raise UnsupportedVersionError(payload.x402_version, supported)


def match_requirement(payload: PaymentPayload, requirement: PaymentRequirement) -> None:
    """Reject a payload whose scheme or network differs from the requirement."""
    if payload.scheme != requirement.scheme or payload.network != requirement.network:
        raise SchemeNetworkMismatchError(
            payload.scheme,
            payload.network,
            expected=[requirement.capability],
        )


def select_requirement(
    payload: PaymentPayload,
    requirements: Sequence[PaymentRequirement],
) -> PaymentRequirement:
    """Pick the offered requirement the payload claims to satisfy."""
    for requirement in requirements:
        if requirement.capability == payload.capability:
            return requirement
    raise SchemeNetworkMismatchError(
        payload.scheme,
        payload.network,
        expected=[r.capability for r in requirements],
    )


__all__ = [
    "X402_VERSION",
    "X_PAYMENT_HEADER",
    "X_PAYMENT_RESPONSE_HEADER",
    "MAX_HEADER_BYTES",
    "encode_payment_payload",
    "decode_payment_payload",
    "encode_requirements",
    "decode_requirement",
    "decode_requirements",
    "encode_settlement_header",
    "decode_settlement_header",
    "check_version",
    "match_requirement",
    "select_requirement",
]
