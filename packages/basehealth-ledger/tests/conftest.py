"""
Pytest configuration for basehealth-ledger tests.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
packages_dir = Path(__file__).parent.parent.parent
for pkg in ["basehealth-core", "basehealth-protocol"]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists() and str(pkg_path) not in sys.path:
        sys.path.insert(0, str(pkg_path))

from basehealth_core.config import PaymentSettings
from basehealth_ledger.store import SqliteLedgerStore
from basehealth_protocol.registry import RequirementRegistry


@pytest.fixture
def settings() -> PaymentSettings:
    return PaymentSettings(
        networks={"base": {"enabled": True, "recipient": "0x9a8f2c5b7e1d3f4a6b8c0d2e4f6a8b0c2d4e6f80"}},
        json_logs=False,
    )


@pytest.fixture
def registry(settings) -> RequirementRegistry:
    return RequirementRegistry(settings)


@pytest.fixture
def ledger() -> SqliteLedgerStore:
    return SqliteLedgerStore("sqlite:///:memory:")
