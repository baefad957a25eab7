"""Solana transfer verifier.

A proof is a transaction signature. Until the signature reaches the
configured commitment the verifier answers ``pending`` so the caller can
poll again. Once confirmed, the parsed transaction is read:

- SPL tokens: the recipient owner's balance delta for the required mint,
  from ``preTokenBalances``/``postTokenBalances``
- native SOL: ``system`` transfer instructions to the recipient
"""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Tuple

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

from .client import SolanaClient

logger = logging.getLogger(__name__)

SIGNATURE_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")
PUBKEY_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def _token_deltas(meta: Dict[str, Any], mint: str) -> Tuple[Dict[str, int], Optional[int], bool]:
    """Net balance change per owner for ``mint``.

    Returns (deltas by owner, token decimals, whether the mint appears at all).
    """
    pre: Dict[int, int] = {}
    owners: Dict[int, str] = {}
    decimals: Optional[int] = None
    seen = False

    for entry in meta.get("preTokenBalances") or []:
        if entry.get("mint") != mint:
            continue
        seen = True
        pre[entry["accountIndex"]] = int(entry["uiTokenAmount"]["amount"])
        owners[entry["accountIndex"]] = entry.get("owner", "")

    deltas: Dict[str, int] = defaultdict(int)
    for entry in meta.get("postTokenBalances") or []:
        if entry.get("mint") != mint:
            continue
        seen = True
        index = entry["accountIndex"]
        decimals = int(entry["uiTokenAmount"]["decimals"])
        owner = entry.get("owner") or owners.get(index, "")
        deltas[owner] += int(entry["uiTokenAmount"]["amount"]) - pre.pop(index, 0)

    # Accounts closed during the transaction only appear in pre balances.
    for index, amount in pre.items():
        deltas[owners[index]] -= amount

    return dict(deltas), decimals, seen


def _system_transfers(tx: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])
    for ix in instructions:
        parsed = ix.get("parsed")
        if ix.get("program") != "system" or not isinstance(parsed, dict):
            continue
        if parsed.get("type") == "transfer":
            yield parsed.get("info") or {}


class SolanaTransferVerifier(PaymentVerifier):
    """Verifies ``exact`` transfers on one Solana cluster."""

    scheme = "exact"

    def __init__(self, network: str, client: SolanaClient) -> None:
        self.network = network
        self.client = client

    @property
    def commitment(self) -> str:
        return self.client.config.commitment

    def payment_id(self, payload: PaymentPayload) -> str:
        signature = payload.payload.get("signature")
        if not isinstance(signature, str) or not SIGNATURE_RE.match(signature):
            raise DecodeError("signature must be a base58 transaction signature", reason="invalid_signature")
        return signature

    def _fail(
        self,
        signature: str,
        status: VerificationStatus,
        detail: Optional[str] = None,
        **fields: Any,
    ) -> VerificationResult:
        return VerificationResult.failure(status, signature, self.network, detail, **fields)

    async def verify(
        self,
        payload: PaymentPayload,
        requirement: PaymentRequirement,
        context: VerificationContext,
    ) -> VerificationResult:
        signature = self.payment_id(payload)
        claimed_from = payload.payload.get("from")
        if claimed_from is not None and (
            not isinstance(claimed_from, str) or not PUBKEY_RE.match(claimed_from)
        ):
            return self._fail(signature, VerificationStatus.INVALID_PAYLOAD, "invalid sender address")
        required = requirement.amount_units
        recipient = requirement.recipient

        try:
            status = await self.client.get_signature_status(signature)
            if status is None:
                # Freshly sent signatures take a moment to become visible.
                return self._fail(signature, VerificationStatus.PENDING, "signature not yet visible")
            if status.get("err"):
                return self._fail(signature, VerificationStatus.TRANSACTION_FAILED, str(status["err"]))
            if not self.client.meets_commitment(status.get("confirmationStatus")):
                return self._fail(
                    signature,
                    VerificationStatus.PENDING,
                    f"commitment {status.get('confirmationStatus')} below {self.commitment}",
                )

            tx = await self.client.get_transaction(signature)
            if tx is None:
                return self._fail(signature, VerificationStatus.PENDING, "transaction not yet available")
        except httpx.TimeoutException:
            logger.warning("Solana RPC timeout verifying %s", signature)
            return self._fail(signature, VerificationStatus.NETWORK_ERROR, "timeout")
        except httpx.TransportError as exc:
            logger.warning("Solana RPC transport error verifying %s: %s", signature, exc)
            return self._fail(signature, VerificationStatus.NETWORK_ERROR, "unreachable")

        meta = tx.get("meta") or {}
        if meta.get("err"):
            return self._fail(signature, VerificationStatus.TRANSACTION_FAILED, str(meta["err"]))

        block_time = None
        if tx.get("blockTime") is not None:
            block_time = datetime.fromtimestamp(int(tx["blockTime"]), tz=timezone.utc)
        expired = check_expiry(requirement, context, block_time)
        if expired:
            return self._fail(signature, VerificationStatus.EXPIRED, expired)

        if requirement.asset:
            deltas, decimals, seen = _token_deltas(meta, requirement.asset)
            if not seen:
                return self._fail(signature, VerificationStatus.CURRENCY_MISMATCH, f"no {requirement.currency} transfer")
            if decimals is not None and decimals != requirement.decimals:
                return self._fail(
                    signature,
                    VerificationStatus.CURRENCY_MISMATCH,
                    f"mint has {decimals} decimals, required {requirement.decimals}",
                )
            value = deltas.get(recipient, 0)
            if value <= 0:
                return self._fail(signature, VerificationStatus.RECIPIENT_MISMATCH)
            senders = sorted((d, owner) for owner, d in deltas.items() if d < 0)
            sender = senders[0][1] if senders else None
        else:
            transfers = [t for t in _system_transfers(tx) if t.get("destination") == recipient]
            if not transfers:
                return self._fail(signature, VerificationStatus.RECIPIENT_MISMATCH)
            value = sum(int(t.get("lamports", 0)) for t in transfers)
            sender = transfers[0].get("source")

        if value < required:
            return self._fail(
                signature,
                VerificationStatus.AMOUNT_MISMATCH,
                f"paid {value}, required {required}",
                amount=value,
                sender=sender,
            )
        if claimed_from is not None and sender != claimed_from:
            return self._fail(signature, VerificationStatus.INVALID_PAYLOAD, "sender does not match transaction")

        logger.info("Verified %s transfer %s: %s units from %s", self.network, signature, value, sender)
        return VerificationResult.valid(
            signature,
            self.network,
            sender=sender,
            amount=value,
            recipient=recipient,
            settled_at=block_time,
        )

    async def aclose(self) -> None:
        await self.client.close()


__all__ = ["SolanaTransferVerifier"]
