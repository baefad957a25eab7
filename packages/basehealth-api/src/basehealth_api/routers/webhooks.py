"""Inbound processor webhooks."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..dependencies import PaymentDependencies, get_deps

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, deps: PaymentDependencies = Depends(get_deps)):
    """Apply a Stripe event to ledger metadata.

    Duplicates return 200 so Stripe stops redelivering them.
    """
    if deps.webhooks is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhooks are not configured",
        )
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature", "")
    outcome = await deps.webhooks.handle(payload, signature)
    return outcome.to_dict()
