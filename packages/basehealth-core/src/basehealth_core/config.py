"""Canonical configuration surface for the payment gate."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .exceptions import ConfigError

NetworkKind = Literal["evm", "solana", "card"]


class NetworkConfig(BaseModel):
    """A settlement network a requirement can be offered on."""
    kind: NetworkKind
    scheme: str = "exact"
    enabled: bool = False
    rpc_url: str = ""
    chain_id: Optional[int] = None
    recipient: str = ""
    currency: str = "USDC"
    decimals: int = 6
    # Token contract (EVM) or mint (Solana). Empty means the native asset.
    asset: str = ""
    asset_name: str = ""
    asset_version: str = ""
    min_confirmations: int = 1
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"


class PricingTier(BaseModel):
    """A priced resource. Tiers with ``entitlement_hours`` are passes."""
    resource_id: str
    price_usd: Decimal
    description: str = ""
    mime_type: str = "application/json"
    service_type: Optional[str] = None
    entitlement_hours: Optional[int] = None
    max_timeout_seconds: int = 300
    # None offers the tier on every enabled network.
    networks: Optional[List[str]] = None

    @property
    def is_pass(self) -> bool:
        return self.entitlement_hours is not None

    @property
    def effective_service_type(self) -> str:
        return self.service_type or self.resource_id


DEFAULT_NETWORKS: Dict[str, Dict[str, Any]] = {
    "base": {
        "kind": "evm",
        "rpc_url": "https://mainnet.base.org",
        "chain_id": 8453,
        "asset": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "asset_name": "USD Coin",
        "asset_version": "2",
        "min_confirmations": 1,
    },
    "base-sepolia": {
        "kind": "evm",
        "rpc_url": "https://sepolia.base.org",
        "chain_id": 84532,
        "asset": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "asset_name": "USDC",
        "asset_version": "2",
        "min_confirmations": 1,
    },
    "solana": {
        "kind": "solana",
        "rpc_url": "https://api.mainnet-beta.solana.com",
        "asset": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    },
    "solana-devnet": {
        "kind": "solana",
        "rpc_url": "https://api.devnet.solana.com",
        "asset": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
    },
    "stripe": {
        "kind": "card",
        "scheme": "intent",
        "rpc_url": "https://api.stripe.com/v1",
        # merchant of record; intents settle to the account behind the secret key
        "recipient": "basehealth",
        "currency": "usd",
        "decimals": 2,
    },
}


def default_tiers() -> List[PricingTier]:
    return [
        PricingTier(
            resource_id="ai-consult",
            price_usd=Decimal("0.50"),
            description="AI health consultation",
        ),
        PricingTier(
            resource_id="chat-assistant-pass",
            price_usd=Decimal("0.25"),
            description="Health assistant chat pass",
            service_type="assistant-pass-chat",
            entitlement_hours=24,
        ),
        PricingTier(
            resource_id="virtual-consultation",
            price_usd=Decimal("75"),
            description="Virtual consultation with a provider",
            max_timeout_seconds=600,
        ),
        PricingTier(
            resource_id="in-person-consultation",
            price_usd=Decimal("150"),
            description="In-person consultation with a provider",
            max_timeout_seconds=600,
        ),
        PricingTier(
            resource_id="specialist-consultation",
            price_usd=Decimal("250"),
            description="Specialist consultation",
            max_timeout_seconds=600,
        ),
        PricingTier(
            resource_id="premium-subscription-month",
            price_usd=Decimal("19.99"),
            description="Premium subscription, one month",
            service_type="premium-subscription",
            entitlement_hours=24 * 30,
        ),
        PricingTier(
            resource_id="premium-subscription-year",
            price_usd=Decimal("199"),
            description="Premium subscription, one year",
            service_type="premium-subscription",
            entitlement_hours=24 * 365,
        ),
        PricingTier(
            resource_id="medical-records-access",
            price_usd=Decimal("10"),
            description="Medical records access",
        ),
        PricingTier(
            resource_id="ai-diagnosis",
            price_usd=Decimal("25"),
            description="AI-assisted diagnosis",
        ),
        PricingTier(
            resource_id="ai-second-opinion",
            price_usd=Decimal("50"),
            description="AI second opinion",
        ),
    ]


class PaymentSettings(BaseSettings):
    """Payment gate configuration."""

    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Protocol
    x402_version: int = 1
    verification_timeout_seconds: float = 10.0
    max_verification_attempts: int = 5
    max_retries: int = 3

    # Storage
    ledger_dsn: str = "sqlite:///./data/ledger.db"
    session_dsn: str = "memory://"

    # Settlement networks, keyed by network id
    networks: Dict[str, NetworkConfig] = Field(
        default_factory=lambda: {
            name: NetworkConfig(**values) for name, values in DEFAULT_NETWORKS.items()
        }
    )

    # Card processor
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Catalog
    tiers: List[PricingTier] = Field(default_factory=default_tiers)
    # Per-pass overrides of the entitlement duration, keyed by resource id
    entitlement_hours: Dict[str, int] = Field(default_factory=dict)
    entitlement_lookback_days: int = 30

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    class Config:
        env_prefix = "BASEHEALTH_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("networks", mode="before")
    @classmethod
    def merge_network_defaults(cls, v):
        """Overlay partial network overrides (e.g. just a recipient) on the defaults."""
        if not isinstance(v, dict):
            return v
        merged: Dict[str, Any] = {}
        for name, override in v.items():
            if isinstance(override, NetworkConfig):
                merged[name] = override
                continue
            base = dict(DEFAULT_NETWORKS.get(name, {}))
            base.update(override or {})
            merged[name] = base
        for name, defaults in DEFAULT_NETWORKS.items():
            merged.setdefault(name, dict(defaults))
        return merged

    @field_validator("x402_version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v < 1:
            raise ValueError("x402_version must be a positive integer")
        return v

    @field_validator("verification_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("verification_timeout_seconds must be positive")
        return v

    def enabled_networks(self) -> Dict[str, NetworkConfig]:
        return {name: net for name, net in self.networks.items() if net.enabled}

    def tier_hours(self, tier: PricingTier) -> Optional[int]:
        """Entitlement duration for a pass tier, honoring overrides."""
        if not tier.is_pass:
            return None
        return self.entitlement_hours.get(tier.resource_id, tier.entitlement_hours)

    def validate_startup(self) -> None:
        """Fail fast on configuration that would break requests later.

        Raises:
            ConfigError: a tier is offered on a network without the recipient,
                RPC endpoint or processor secret needed to settle on it.
        """
        problems: List[str] = []
        enabled = self.enabled_networks()
        seen: set[str] = set()

        for tier in self.tiers:
            if tier.resource_id in seen:
                problems.append(f"duplicate tier '{tier.resource_id}'")
            seen.add(tier.resource_id)
            if tier.price_usd <= 0:
                problems.append(f"tier '{tier.resource_id}' must have a positive price")
            if tier.max_timeout_seconds <= 0:
                problems.append(f"tier '{tier.resource_id}' must have a positive timeout")
            if tier.is_pass and (self.tier_hours(tier) or 0) <= 0:
                problems.append(f"pass '{tier.resource_id}' needs positive entitlement hours")

            names = tier.networks if tier.networks is not None else list(enabled)
            for name in names:
                net = self.networks.get(name)
                if net is None:
                    problems.append(f"tier '{tier.resource_id}' references unknown network '{name}'")
                    continue
                if not net.enabled:
                    problems.append(f"tier '{tier.resource_id}' references disabled network '{name}'")
                    continue
                if not net.recipient:
                    problems.append(f"network '{name}' has no recipient address")
                if net.kind == "card":
                    if not self.stripe_secret_key:
                        problems.append(f"network '{name}' requires BASEHEALTH_STRIPE_SECRET_KEY")
                    continue
                if not net.rpc_url:
                    problems.append(f"network '{name}' has no RPC endpoint")

        if problems:
            raise ConfigError(
                "Invalid payment configuration: " + "; ".join(problems),
                details={"problems": problems},
            )


@lru_cache
def load_settings(env_file: str | None = None) -> PaymentSettings:
    """Load PaymentSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return PaymentSettings(_env_file=env_path)


__all__ = [
    "NetworkConfig",
    "NetworkKind",
    "PricingTier",
    "PaymentSettings",
    "DEFAULT_NETWORKS",
    "default_tiers",
    "load_settings",
]
