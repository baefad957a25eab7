"""Chain verifiers for the payment gate (EVM exact transfers and Solana)."""

from .evm import ExactEvmVerifier, TokenTransfer, is_native_asset, token_transfers
from .rpc_client import ChainIDMismatchError, EvmRpcClient, RPCError, hex_to_int
from .solana import SolanaClient, SolanaConfig, SolanaRPCError, SolanaTransferVerifier

__all__ = [
    "ExactEvmVerifier",
    "TokenTransfer",
    "is_native_asset",
    "token_transfers",
    "ChainIDMismatchError",
    "EvmRpcClient",
    "RPCError",
    "hex_to_int",
    "SolanaClient",
    "SolanaConfig",
    "SolanaRPCError",
    "SolanaTransferVerifier",
]
