"""Solana RPC client wrapper."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from basehealth_protocol.verifier import UpstreamError

logger = logging.getLogger(__name__)

# Token mint addresses
SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOLANA_DEVNET_USDC_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


@dataclass
class SolanaConfig:
    """Solana connection configuration."""
    rpc_url: str
    commitment: str = "confirmed"
    timeout: float = 10.0


class SolanaClient:
    """Async Solana JSON-RPC client.

    Uses raw httpx instead of solana-py to minimize dependencies.
    All Solana RPC methods are called via JSON-RPC 2.0.
    """

    def __init__(
        self,
        config: SolanaConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout, connect=min(config.timeout, 5.0))
        )
        self._request_id = 0

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Make a JSON-RPC call to Solana."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        resp = await self._client.post(self.config.rpc_url, json=payload)
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise SolanaRPCError(f"{method}: response is not JSON") from exc
        if not isinstance(data, dict):
            raise SolanaRPCError(f"{method}: response is not a JSON-RPC object")
        if data.get("error"):
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise SolanaRPCError(error.get("message", "Unknown RPC error"), error)
        return data.get("result")

    async def get_signature_status(self, signature: str) -> Optional[dict[str, Any]]:
        """Status of one signature, or None when the cluster does not know it."""
        result = await self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        statuses = (result or {}).get("value") or []
        if not statuses:
            return None
        return statuses[0]

    async def get_transaction(self, signature: str) -> Optional[dict[str, Any]]:
        """Fetch a confirmed transaction with parsed instructions."""
        return await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.config.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def meets_commitment(self, confirmation_status: Optional[str]) -> bool:
        """``finalized`` satisfies ``confirmed``; ``processed`` satisfies neither."""
        if confirmation_status not in COMMITMENT_RANK:
            return False
        return COMMITMENT_RANK[confirmation_status] >= COMMITMENT_RANK[self.config.commitment]

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


class SolanaRPCError(UpstreamError):
    """Solana RPC error."""
    def __init__(self, message: str, error_data: dict[str, Any] | None = None):
        super().__init__(message)
        self.error_data = error_data or {}


__all__ = [
    "SolanaClient",
    "SolanaConfig",
    "SolanaRPCError",
    "SOLANA_USDC_MINT",
    "SOLANA_DEVNET_USDC_MINT",
    "COMMITMENT_RANK",
]
