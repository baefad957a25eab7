"""Exact-transfer verifier for EVM networks (Base, Base Sepolia).

A proof is a transaction hash. The transaction must be mined with enough
confirmations and must move at least the required amount of the required
asset to the configured recipient inside the requirement window:

- native value: ``tx.to`` and ``tx.value``
- ERC-20: ``Transfer`` logs emitted by the asset contract in the receipt
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from basehealth_core.exceptions import DecodeError
from basehealth_protocol.reason_codes import VerificationStatus
from basehealth_protocol.schemas import PaymentPayload, PaymentRequirement
from basehealth_protocol.verifier import (
    PaymentVerifier,
    VerificationContext,
    VerificationResult,
    check_expiry,
)

from .rpc_client import EvmRpcClient, RPCError, hex_to_int

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def is_native_asset(asset: str) -> bool:
    return not asset or asset.lower() == ZERO_ADDRESS


@dataclass(slots=True)
class TokenTransfer:
    sender: str
    recipient: str
    value: int


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def token_transfers(receipt: Dict[str, Any], asset: str) -> List[TokenTransfer]:
    """Decode ERC-20 Transfer events emitted by ``asset`` in a receipt."""
    transfers: List[TokenTransfer] = []
    for log in receipt.get("logs") or []:
        if str(log.get("address", "")).lower() != asset.lower():
            continue
        topics = log.get("topics") or []
        if len(topics) != 3 or str(topics[0]).lower() != TRANSFER_TOPIC:
            continue
        data = log.get("data") or "0x0"
        transfers.append(
            TokenTransfer(
                sender=_topic_address(topics[1]),
                recipient=_topic_address(topics[2]),
                value=int(data, 16) if data != "0x" else 0,
            )
        )
    return transfers


class ExactEvmVerifier(PaymentVerifier):
    """Verifies ``exact`` transfers on one EVM network."""

    scheme = "exact"

    def __init__(
        self,
        network: str,
        client: EvmRpcClient,
        *,
        min_confirmations: int = 1,
    ) -> None:
        self.network = network
        self.client = client
        self.min_confirmations = max(1, min_confirmations)

    def payment_id(self, payload: PaymentPayload) -> str:
        tx_hash = payload.payload.get("txHash")
        if not isinstance(tx_hash, str) or not TX_HASH_RE.match(tx_hash):
            raise DecodeError("txHash must be a 0x-prefixed 32-byte hex string", reason="invalid_tx_hash")
        return tx_hash.lower()

    def _fail(
        self,
        tx_hash: str,
        status: VerificationStatus,
        detail: Optional[str] = None,
        **fields: Any,
    ) -> VerificationResult:
        return VerificationResult.failure(status, tx_hash, self.network, detail, **fields)

    async def verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        context: VerificationContext,
    ) -> VerificationResult:
        tx_hash = self.payment_id(payload)

        claimed_from = payload.payload.get("from")
        if claimed_from is not None and (
            not isinstance(claimed_from, str) or not ADDRESS_RE.match(claimed_from)
        ):
            return self._fail(tx_hash, VerificationStatus.INVALID_PAYLOAD, "invalid sender address")
        claimed_from = claimed_from.lower() if claimed_from else None
        recipient = requirement.recipient.lower()
        required = requirement.amount_units

        try:
            receipt = await self.client.get_transaction_receipt(tx_hash)
            if receipt is None:
                tx = await self.client.get_transaction(tx_hash)
                if tx is None:
                    return self._fail(tx_hash, VerificationStatus.NOT_FOUND)
                return self._fail(tx_hash, VerificationStatus.PENDING, "transaction not yet mined")

            if hex_to_int(receipt.get("status")) != 1:
                return self._fail(tx_hash, VerificationStatus.TRANSACTION_FAILED, "transaction reverted")

            block_number = hex_to_int(receipt["blockNumber"])
            confirmations = await self.client.get_block_number() - block_number + 1
            if confirmations < self.min_confirmations:
                return self._fail(
                    tx_hash,
                    VerificationStatus.PENDING,
                    f"{max(confirmations, 0)}/{self.min_confirmations} confirmations",
                )

            block = await self.client.get_block(block_number)
            if block is None:
                raise RPCError(f"block {block_number} not returned for mined transaction")
            block_time = datetime.fromtimestamp(hex_to_int(block["timestamp"]), tz=timezone.utc)

            expired = check_expiry(requirement, context, block_time)
            if expired:
                return self._fail(tx_hash, VerificationStatus.EXPIRED, expired)

            if is_native_asset(requirement.asset):
                tx = await self.client.get_transaction(tx_hash)
                if tx is None:
                    raise RPCError("transaction missing for an existing receipt")
                sender = str(tx["from"]).lower()
                to = str(tx.get("to") or "").lower()
                value = hex_to_int(tx["value"])
                if to != recipient:
                    return self._fail(tx_hash, VerificationStatus.RECIPIENT_MISMATCH, recipient=to, sender=sender)
                if value < required:
                    return self._fail(
                        tx_hash,
                        VerificationStatus.AMOUNT_MISMATCH,
                        f"paid {value}, required {required}",
                        amount=value,
                        sender=sender,
                    )
            else:
                transfers = token_transfers(receipt, requirement.asset)
                if not transfers:
                    return self._fail(tx_hash, VerificationStatus.CURRENCY_MISMATCH, f"no {requirement.currency} transfer")
                to_recipient = [t for t in transfers if t.recipient == recipient]
                if not to_recipient:
                    return self._fail(tx_hash, VerificationStatus.RECIPIENT_MISMATCH, recipient=transfers[0].recipient)
                if claimed_from is not None:
                    to_recipient = [t for t in to_recipient if t.sender == claimed_from]
                    if not to_recipient:
                        return self._fail(tx_hash, VerificationStatus.INVALID_PAYLOAD, "sender does not match transfer")
                best = max(to_recipient, key=lambda t: t.value)
                sender, value = best.sender, best.value
                if value < required:
                    return self._fail(
                        tx_hash,
                        VerificationStatus.AMOUNT_MISMATCH,
                        f"paid {value}, required {required}",
                        amount=value,
                        sender=sender,
                    )

            if claimed_from is not None and sender != claimed_from:
                return self._fail(tx_hash, VerificationStatus.INVALID_PAYLOAD, "sender does not match transaction")

        except httpx.TimeoutException:
            logger.warning("RPC timeout verifying %s on %s", tx_hash, self.network)
            return self._fail(tx_hash, VerificationStatus.NETWORK_ERROR, "timeout")
        except httpx.TransportError as exc:
            logger.warning("RPC transport error verifying %s on %s: %s", tx_hash, self.network, exc)
            return self._fail(tx_hash, VerificationStatus.NETWORK_ERROR, "unreachable")

        logger.info(
            "Verified %s transfer %s: %s units from %s",
            self.network,
            tx_hash,
            value,
            sender,
        )
        return VerificationResult.valid(
            tx_hash,
            self.network,
            sender=sender,
            amount=value,
            recipient=recipient,
            settled_at=block_time,
        )

    async def aclose(self) -> None:
        await self.client.close()


__all__ = [
    "ExactEvmVerifier",
    "TokenTransfer",
    "token_transfers",
    "is_native_asset",
    "TRANSFER_TOPIC",
    "ZERO_ADDRESS",
]
