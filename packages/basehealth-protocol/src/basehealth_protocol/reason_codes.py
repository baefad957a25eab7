"""Deterministic mapping table for verification outcomes.

Every verifier reports one of these statuses. The table records whether the
outcome is retryable, the HTTP status used when it is surfaced directly, and
the message shown to the client so it can tell "try again shortly" apart
from "this payment cannot succeed".
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class VerificationStatus(str, Enum):
    """Outcome of verifying one payment proof."""

    VALID = "valid"
    PENDING = "pending"
    NOT_FOUND = "not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    CURRENCY_MISMATCH = "currency_mismatch"
    EXPIRED = "expired"
    TRANSACTION_FAILED = "transaction_failed"
    INVALID_PAYLOAD = "invalid_payload"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True)
class StatusMapping:
    """Maps a verification status to its retry policy and client message."""

    status: VerificationStatus
    retryable: bool
    http_status: int
    human_message: str


STATUS_TABLE: Dict[VerificationStatus, StatusMapping] = {
    VerificationStatus.VALID: StatusMapping(
        status=VerificationStatus.VALID,
        retryable=False,
        http_status=200,
        human_message="Payment verified",
    ),
    VerificationStatus.PENDING: StatusMapping(
        status=VerificationStatus.PENDING,
        retryable=True,
        http_status=402,
        human_message="not yet confirmed, please retry",
    ),
    VerificationStatus.NETWORK_ERROR: StatusMapping(
        status=VerificationStatus.NETWORK_ERROR,
        retryable=True,
        http_status=502,
        human_message="payment network unreachable, please retry",
    ),
    VerificationStatus.NOT_FOUND: StatusMapping(
        status=VerificationStatus.NOT_FOUND,
        retryable=False,
        http_status=402,
        human_message="payment not found",
    ),
    VerificationStatus.AMOUNT_MISMATCH: StatusMapping(
        status=VerificationStatus.AMOUNT_MISMATCH,
        retryable=False,
        http_status=402,
        human_message="insufficient amount",
    ),
    VerificationStatus.RECIPIENT_MISMATCH: StatusMapping(
        status=VerificationStatus.RECIPIENT_MISMATCH,
        retryable=False,
        http_status=402,
        human_message="payment sent to the wrong recipient",
    ),
    VerificationStatus.CURRENCY_MISMATCH: StatusMapping(
        status=VerificationStatus.CURRENCY_MISMATCH,
        retryable=False,
        http_status=402,
        human_message="payment made in the wrong currency or token",
    ),
    VerificationStatus.EXPIRED: StatusMapping(
        status=VerificationStatus.EXPIRED,
        retryable=False,
        http_status=402,
        human_message="payment window expired",
    ),
    VerificationStatus.TRANSACTION_FAILED: StatusMapping(
        status=VerificationStatus.TRANSACTION_FAILED,
        retryable=False,
        http_status=402,
        human_message="transaction failed or was canceled",
    ),
    VerificationStatus.INVALID_PAYLOAD: StatusMapping(
        status=VerificationStatus.INVALID_PAYLOAD,
        retryable=False,
        http_status=402,
        human_message="payment proof is malformed or inconsistent",
    ),
}


def is_retryable(status: VerificationStatus) -> bool:
    return STATUS_TABLE[status].retryable


def human_message(status: VerificationStatus) -> str:
    return STATUS_TABLE[status].human_message


__all__ = [
    "VerificationStatus",
    "StatusMapping",
    "STATUS_TABLE",
    "is_retryable",
    "human_message",
]
