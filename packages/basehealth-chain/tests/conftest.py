"""
Pytest configuration for basehealth-chain tests.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
packages_dir = Path(__file__).parent.parent.parent
for pkg in ["basehealth-core", "basehealth-protocol"]:
    pkg_path = packages_dir / pkg / "src"
    if pkg_path.exists() and str(pkg_path) not in sys.path:
        sys.path.insert(0, str(pkg_path))


class FakeRpcNode:
    """JSON-RPC node answering from a method -> result table.

    A result that is an exception is raised from the transport; a result that
    is a dict with an ``error`` key under ``__error__`` is sent as an RPC error.
    """

    def __init__(self, results: Dict[str, Any]) -> None:
        self.results = results
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        result = self.results.get(body["method"])
        if isinstance(result, Exception):
            raise result
        if isinstance(result, dict) and "__error__" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result["__error__"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    @property
    def methods(self) -> List[str]:
        return [call["method"] for call in self.calls]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def rpc_node():
    return FakeRpcNode
