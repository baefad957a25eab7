"""
Pytest configuration for basehealth-protocol tests.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
packages_dir = Path(__file__).parent.parent.parent
for pkg in ["basehealth-core"]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists() and str(pkg_path) not in sys.path:
        sys.path.insert(0, str(pkg_path))

from basehealth_core.config import PaymentSettings
from basehealth_protocol.schemas import PaymentPayload, PaymentRequirement

BASE_RECIPIENT = "0x9a8f2c5b7e1d3f4a6b8c0d2e4f6a8b0c2d4e6f80"
SOLANA_RECIPIENT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TX_HASH = "0x" + "ab" * 32


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
def requirement() -> PaymentRequirement:
    return PaymentRequirement(
        scheme="exact",
        network="base",
        resource="ai-consult",
        amount="500000",
        currency="USDC",
        recipient=BASE_RECIPIENT,
        description="AI health consultation",
        max_timeout_seconds=300,
        asset="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        decimals=6,
        extra={"name": "USD Coin", "version": "2"},
    )


@pytest.fixture
def payload() -> PaymentPayload:
    return PaymentPayload(
        x402_version=1,
        scheme="exact",
        network="base",
        payload={"txHash": TX_HASH},
    )
