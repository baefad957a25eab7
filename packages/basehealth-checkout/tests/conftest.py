"""
Pytest configuration for basehealth-checkout tests.
"""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
packages_dir = Path(__file__).parent.parent.parent
for pkg in ["basehealth-core", "basehealth-protocol", "basehealth-ledger"]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists() and str(pkg_path) not in sys.path:
        sys.path.insert(0, str(pkg_path))

from basehealth_checkout.machine import CheckoutMachine
from basehealth_checkout.sessions import InMemorySessionStore
from basehealth_core.config import PaymentSettings
from basehealth_core.exceptions import DecodeError
from basehealth_ledger.store import SqliteLedgerStore
from basehealth_protocol.codec import encode_payment_payload
from basehealth_protocol.reason_codes import VerificationStatus
from basehealth_protocol.registry import RequirementRegistry
from basehealth_protocol.schemas import PaymentPayload
from basehealth_protocol.verifier import PaymentVerifier, VerificationResult, VerifierSet

SENDER = "0x1212121212121212121212121212121212121212"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedVerifier(PaymentVerifier):
    """Answers with queued statuses, then ``valid``."""

    scheme = "exact"

    def __init__(self, network: str, sender: str = SENDER) -> None:
        self.network = network
        self.sender = sender
        self.script: List[VerificationStatus] = []
        self.amount: Optional[int] = None
        self.calls = 0

    def payment_id(self, payload):
        value = payload.payload.get("txHash")
        if not isinstance(value, str) or not value:
            raise DecodeError("txHash is required", reason="invalid_tx_hash")
        return value

    async def verify(self, payload, requirement, context):
        self.calls += 1
        payment_id = self.payment_id(payload)
        status = self.script.pop(0) if self.script else VerificationStatus.VALID
        if status is VerificationStatus.VALID:
            return VerificationResult.valid(
                payment_id,
                self.network,
                sender=self.sender,
                amount=self.amount if self.amount is not None else requirement.amount_units,
                recipient=requirement.recipient,
                settled_at=context.now - timedelta(seconds=3),
            )
        return VerificationResult.failure(status, payment_id, self.network)


@pytest.fixture
def settings() -> PaymentSettings:
    return PaymentSettings(
        networks={
            "base": {"enabled": True, "recipient": "0x9a8f2c5b7e1d3f4a6b8c0d2e4f6a8b0c2d4e6f80"},
            "solana": {"enabled": True, "recipient": "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"},
        },
        json_logs=False,
    )


@pytest.fixture
def registry(settings) -> RequirementRegistry:
    return RequirementRegistry(settings)


@pytest.fixture
def ledger() -> SqliteLedgerStore:
    return SqliteLedgerStore("sqlite:///:memory:")


@pytest.fixture
def sessions() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def base_verifier() -> ScriptedVerifier:
    return ScriptedVerifier("base")


@pytest.fixture
def solana_verifier() -> ScriptedVerifier:
    return ScriptedVerifier("solana", sender="9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM")


@pytest.fixture
def machine(registry, base_verifier, solana_verifier, ledger, sessions, clock) -> CheckoutMachine:
    return CheckoutMachine(
        registry,
        VerifierSet([base_verifier, solana_verifier]),
        ledger,
        sessions,
        max_verification_attempts=3,
        max_retries=2,
        clock=clock,
    )


@pytest.fixture
def make_header():
    def _make(tx_hash: str = "0xtx1", network: str = "base", version: int = 1, **extra) -> str:
        return encode_payment_payload(
            PaymentPayload(
                x402_version=version,
                scheme="exact",
                network=network,
                payload={"txHash": tx_hash, **extra},
            )
        )

    return _make
