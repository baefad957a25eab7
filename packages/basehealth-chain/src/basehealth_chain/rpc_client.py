"""
EVM JSON-RPC client used by the exact-transfer verifier.

Features:
- Explicit per-request timeout (a stalled node cannot stall a request)
- Optional chain ID validation on first use
- Typed RPC errors for error responses and malformed bodies
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from basehealth_protocol.verifier import UpstreamError

logger = logging.getLogger(__name__)


class RPCError(UpstreamError):
    """JSON-RPC error response or an unusable response body."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class ChainIDMismatchError(RPCError):
    """Raised when the endpoint serves a different chain than configured."""

    def __init__(self, network: str, expected: int, received: int):
        self.network = network
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch for {network}: expected {expected}, got {received}"
        )


def hex_to_int(value: Any) -> int:
    """Decode a JSON-RPC quantity (``"0x1a"``)."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.startswith(("0x", "0X")):
        return int(value, 16)
    raise ValueError(f"not a hex quantity: {value!r}")


class EvmRpcClient:
    """Async EVM JSON-RPC client over httpx."""

    def __init__(
        self,
        rpc_url: str,
        *,
        network: str = "base",
        timeout: float = 10.0,
        chain_id: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.network = network
        self._expected_chain_id = chain_id
        self._chain_checked = chain_id is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._request_id = 0

    async def _post(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        start = time.monotonic()
        response = await self._client.post(
            self.rpc_url,
            json=payload,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as exc:
            raise RPCError(f"{method}: response is not JSON") from exc
        if not isinstance(body, dict):
            raise RPCError(f"{method}: response is not a JSON-RPC object")
        if body.get("error"):
            error = body["error"] if isinstance(body["error"], dict) else {"message": str(body["error"])}
            raise RPCError(
                error.get("message", "RPC error"),
                code=error.get("code"),
                data=error.get("data"),
            )
        logger.debug(
            "RPC %s on %s took %.0fms",
            method,
            self.network,
            (time.monotonic() - start) * 1000,
        )
        return body.get("result")

    async def _ensure_chain(self) -> None:
        if self._chain_checked:
            return
        received = hex_to_int(await self._post("eth_chainId", []))
        if received != self._expected_chain_id:
            raise ChainIDMismatchError(self.network, self._expected_chain_id, received)
        self._chain_checked = True
        logger.info("Chain ID validated for %s: %s", self.network, received)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        await self._ensure_chain()
        return await self._post(method, params or [])

    async def get_block_number(self) -> int:
        return hex_to_int(await self.call("eth_blockNumber"))

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_block(self, block_number: int | str) -> Optional[Dict[str, Any]]:
        if isinstance(block_number, int):
            block_number = hex(block_number)
        return await self.call("eth_getBlockByNumber", [block_number, False])

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["EvmRpcClient", "RPCError", "ChainIDMismatchError", "hex_to_int"]
