"""Solana chain support: JSON-RPC client and transfer verifier."""

from .client import (
    COMMITMENT_RANK,
    SOLANA_DEVNET_USDC_MINT,
    SOLANA_USDC_MINT,
    SolanaClient,
    SolanaConfig,
    SolanaRPCError,
)
from .verifier import SolanaTransferVerifier

__all__ = [
    "COMMITMENT_RANK",
    "SOLANA_DEVNET_USDC_MINT",
    "SOLANA_USDC_MINT",
    "SolanaClient",
    "SolanaConfig",
    "SolanaRPCError",
    "SolanaTransferVerifier",
]
