"""Wire models exchanged between clients and the payment gate.

All models serialize with camelCase aliases (``maxTimeoutSeconds``,
``x402Version``, ``txHash``) and accept either spelling on input.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


class X402Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class PaymentRequirement(X402Model):
    """What must be paid to unlock a resource. Immutable once issued."""

    scheme: str = Field(min_length=1)
    network: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    amount: str  # integer string in minor units of ``currency``
    currency: str
    recipient: str
    description: str = ""
    mime_type: str = "application/json"
    max_timeout_seconds: int = Field(gt=0)
    asset: str = ""
    decimals: int = Field(ge=0)
    extra: Optional[Dict[str, Any]] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        if not v.isascii() or not v.isdigit():
            raise ValueError("amount must be an integer string in minor units")
        if int(v) <= 0:
            raise ValueError("amount must be positive")
        return v

    @property
    def amount_units(self) -> int:
        return int(self.amount)

    @property
    def capability(self) -> tuple[str, str]:
        return (self.scheme, self.network)


class PaymentPayload(X402Model):
    """Client-submitted proof of payment. Untrusted input."""

    x402_version: StrictInt
    scheme: str = Field(min_length=1)
    network: str = Field(min_length=1)
    payload: Dict[str, Any]

    @property
    def capability(self) -> tuple[str, str]:
        return (self.scheme, self.network)


class SettlementResponse(X402Model):
    """Result of settling a payment, also sent as ``X-PAYMENT-RESPONSE``."""

    success: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    network_id: Optional[str] = None


class SupportedKind(X402Model):
    scheme: str
    network: str


class SupportedResponse(X402Model):
    kinds: List[SupportedKind]


__all__ = [
    "X402Model",
    "PaymentRequirement",
    "PaymentPayload",
    "SettlementResponse",
    "SupportedKind",
    "SupportedResponse",
]
