"""Pytest configuration and fixtures for BaseHealth API tests."""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure local packages are importable when running pytest directly.
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
packages_dir = Path(__file__).parent.parent.parent
for pkg in [
    "basehealth-core",
    "basehealth-protocol",
    "basehealth-chain",
    "basehealth-ledger",
    "basehealth-checkout",
]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists():
        sys.path.insert(0, str(pkg_path))

from basehealth_api.main import create_app
from basehealth_checkout.sessions import InMemorySessionStore
from basehealth_core.config import PaymentSettings
from basehealth_core.exceptions import DecodeError
from basehealth_ledger.store import SqliteLedgerStore
from basehealth_protocol.codec import encode_payment_payload
from basehealth_protocol.reason_codes import VerificationStatus
from basehealth_protocol.schemas import PaymentPayload
from basehealth_protocol.verifier import PaymentVerifier, VerificationResult, VerifierSet

BASE_RECIPIENT = "0x9a8f2c5b7e1d3f4a6b8c0d2e4f6a8b0c2d4e6f80"
SOLANA_RECIPIENT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
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

    def __init__(self, network: str) -> None:
        self.network = network
        self.script: List[VerificationStatus] = []
        self.amount: Optional[int] = None
        self.sender: Optional[str] = None
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
                sender=self.sender or payload.payload.get("from", SENDER),
                amount=self.amount if self.amount is not None else requirement.amount_units,
                recipient=requirement.recipient,
                settled_at=context.now,
            )
        return VerificationResult.failure(status, payment_id, self.network)


@pytest.fixture
def settings() -> PaymentSettings:
    return PaymentSettings(
        networks={
            "base": {"enabled": True, "recipient": BASE_RECIPIENT},
            "solana": {"enabled": True, "recipient": SOLANA_RECIPIENT},
        },
        json_logs=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def base_verifier() -> ScriptedVerifier:
    return ScriptedVerifier("base")


@pytest.fixture
def ledger() -> SqliteLedgerStore:
    return SqliteLedgerStore("sqlite:///:memory:")


@pytest.fixture
def app(settings, base_verifier, ledger, clock):
    """Create a test application instance."""
    return create_app(
        settings,
        verifiers=VerifierSet([base_verifier, ScriptedVerifier("solana")]),
        ledger=ledger,
        sessions=InMemorySessionStore(),
        clock=clock,
    )


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


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
