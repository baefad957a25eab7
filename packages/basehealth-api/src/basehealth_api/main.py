"""API composition root."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI

from basehealth_chain.evm import ExactEvmVerifier
from basehealth_chain.rpc_client import EvmRpcClient
from basehealth_chain.solana import SolanaClient, SolanaConfig, SolanaTransferVerifier
from basehealth_checkout.connectors.stripe import StripeConnector, StripeIntentVerifier
from basehealth_checkout.machine import CheckoutMachine
from basehealth_checkout.sessions import SessionStore, create_session_store
from basehealth_checkout.webhooks import StripeWebhookConsumer
from basehealth_core.config import PaymentSettings, load_settings
from basehealth_core.database import Database
from basehealth_core.logging_config import setup_logging
from basehealth_ledger.access import AccessGate
from basehealth_ledger.store import LedgerStore, create_ledger_store
from basehealth_protocol.registry import RequirementRegistry
from basehealth_protocol.verifier import VerifierSet

from .dependencies import PaymentDependencies, get_deps
from .middleware import RequestLoggingMiddleware, register_exception_handlers
from .routers import access, checkout, health, webhooks, x402

logger = logging.getLogger("basehealth.api")


def build_stripe_connector(settings: PaymentSettings) -> Optional[StripeConnector]:
    if not settings.stripe_secret_key and not settings.stripe_webhook_secret:
        return None
    card = next((net for net in settings.networks.values() if net.kind == "card"), None)
    api_base = card.rpc_url if card and card.rpc_url else "https://api.stripe.com/v1"
    return StripeConnector(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret or None,
        api_base=api_base,
        timeout=settings.verification_timeout_seconds,
    )


def build_verifiers(
    settings: PaymentSettings,
    stripe: Optional[StripeConnector] = None,
) -> VerifierSet:
    """One verifier per enabled network, each with its own HTTP client."""
    timeout = settings.verification_timeout_seconds
    verifiers = VerifierSet()
    for name, net in sorted(settings.enabled_networks().items()):
        if net.kind == "evm":
            client = EvmRpcClient(net.rpc_url, network=name, timeout=timeout, chain_id=net.chain_id)
            verifiers.register(ExactEvmVerifier(name, client, min_confirmations=net.min_confirmations))
        elif net.kind == "solana":
            client = SolanaClient(SolanaConfig(rpc_url=net.rpc_url, commitment=net.commitment, timeout=timeout))
            verifiers.register(SolanaTransferVerifier(name, client))
        elif net.kind == "card":
            connector = stripe or StripeConnector(
                api_key=settings.stripe_secret_key,
                api_base=net.rpc_url,
                timeout=timeout,
            )
            verifiers.register(StripeIntentVerifier(connector, network=name))
    return verifiers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting BaseHealth payment API...")
    yield
    logger.info("Shutting down BaseHealth payment API...")
    deps: PaymentDependencies = app.state.deps
    await deps.verifiers.aclose()
    if deps.stripe is not None:
        # shared with the card verifier, if any; closing twice is a no-op
        await deps.stripe.close()
    await deps.sessions.close()
    await deps.ledger.close()
    await Database.close()


def create_app(
    settings: PaymentSettings | None = None,
    *,
    verifiers: Optional[VerifierSet] = None,
    ledger: Optional[LedgerStore] = None,
    sessions: Optional[SessionStore] = None,
    stripe: Optional[StripeConnector] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """Build the application.

    Raises:
        ConfigError: the configuration cannot serve its catalog.
    """
    settings = settings or load_settings()
    setup_logging(level=settings.log_level, json_format=settings.json_logs)
    settings.validate_startup()

    stripe = stripe or build_stripe_connector(settings)
    registry = RequirementRegistry(settings)
    verifiers = verifiers or build_verifiers(settings, stripe)
    ledger = ledger or create_ledger_store(settings.ledger_dsn)
    sessions = sessions or create_session_store(settings.session_dsn)
    machine = CheckoutMachine(
        registry,
        verifiers,
        ledger,
        sessions,
        x402_version=settings.x402_version,
        max_verification_attempts=settings.max_verification_attempts,
        max_retries=settings.max_retries,
        clock=clock,
    )
    deps = PaymentDependencies(
        settings=settings,
        registry=registry,
        verifiers=verifiers,
        ledger=ledger,
        sessions=sessions,
        machine=machine,
        access=AccessGate(ledger, registry, lookback_days=settings.entitlement_lookback_days),
        stripe=stripe,
        webhooks=StripeWebhookConsumer(stripe, ledger) if stripe and stripe.webhook_secret else None,
    )

    app = FastAPI(
        title="BaseHealth Payments API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.deps = deps
    app.add_middleware(RequestLoggingMiddleware, exclude_paths=["/health"])
    register_exception_handlers(app)

    app.dependency_overrides[get_deps] = lambda: deps
    app.include_router(x402.router)
    app.include_router(access.router)
    app.include_router(checkout.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)

    logger.info(
        "API initialized: ledger=%s sessions=%s verifiers=%s",
        type(ledger).__name__,
        type(sessions).__name__,
        [f"{k['scheme']}/{k['network']}" for k in verifiers.kinds()],
    )
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
