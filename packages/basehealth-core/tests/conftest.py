"""
Pytest configuration for basehealth-core tests.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

RECIPIENT = "0x9a8f2c5b7e1d3f4a6b8c0d2e4f6a8b0c2d4e6f80"


@pytest.fixture
def recipient() -> str:
    return RECIPIENT
