"""x402 payment-gate protocol: wire models, codec, registry and verifier dispatch."""

from .codec import (
    X402_VERSION,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    check_version,
    decode_payment_payload,
    decode_requirement,
    decode_requirements,
    decode_settlement_header,
    encode_payment_payload,
    encode_requirements,
    encode_settlement_header,
    match_requirement,
    select_requirement,
)
from .reason_codes import STATUS_TABLE, VerificationStatus, human_message, is_retryable
from .registry import RequirementRegistry, to_minor_units
from .schemas import (
    PaymentPayload,
    PaymentRequirement,
    SettlementResponse,
    SupportedKind,
    SupportedResponse,
)
from .verifier import (
    PaymentVerifier,
    UpstreamError,
    VerificationContext,
    VerificationResult,
    VerifierSet,
    check_expiry,
)

__all__ = [
    "X402_VERSION",
    "X_PAYMENT_HEADER",
    "X_PAYMENT_RESPONSE_HEADER",
    "check_version",
    "decode_payment_payload",
    "decode_requirement",
    "decode_requirements",
    "decode_settlement_header",
    "encode_payment_payload",
    "encode_requirements",
    "encode_settlement_header",
    "match_requirement",
    "select_requirement",
    "STATUS_TABLE",
    "VerificationStatus",
    "human_message",
    "is_retryable",
    "RequirementRegistry",
    "to_minor_units",
    "PaymentPayload",
    "PaymentRequirement",
    "SettlementResponse",
    "SupportedKind",
    "SupportedResponse",
    "PaymentVerifier",
    "UpstreamError",
    "VerificationContext",
    "VerificationResult",
    "VerifierSet",
    "check_expiry",
]
