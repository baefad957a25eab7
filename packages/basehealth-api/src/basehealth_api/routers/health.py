"""Health check."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..dependencies import PaymentDependencies, get_deps

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(deps: PaymentDependencies = Depends(get_deps)):
    return {
        "status": "ok",
        "environment": deps.settings.environment,
        "x402Version": deps.settings.x402_version,
        "components": {
            "ledger": type(deps.ledger).__name__,
            "sessions": type(deps.sessions).__name__,
            "verifiers": deps.verifiers.kinds(),
            "stripeWebhooks": deps.webhooks is not None,
        },
    }
