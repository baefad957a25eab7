"""Requirement registry: the priced-resource catalog.

Requirements are derived once from settings when the registry is built, so
every fetch for a resource returns the same immutable objects and encodes to
identical bytes until the configuration (the pricing epoch) changes.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from basehealth_core.config import NetworkConfig, PaymentSettings, PricingTier
from basehealth_core.exceptions import ConfigError, RequirementNotFound, SchemeNetworkMismatchError

from .schemas import PaymentRequirement

logger = logging.getLogger(__name__)


def to_minor_units(price: Decimal, decimals: int) -> str:
    """Convert a decimal price to an exact integer string of minor units.

    >>> to_minor_units(Decimal("0.50"), 6)
    '500000'
    """
    scaled = price.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ConfigError(
            f"Price {price} cannot be represented with {decimals} decimals",
            details={"price": str(price), "decimals": decimals},
        )
    return str(int(scaled))


def _build_requirement(
    tier: PricingTier,
    network_id: str,
    network: NetworkConfig,
) -> PaymentRequirement:
    extra = None
    if network.kind == "evm" and network.asset_name:
        extra = {"name": network.asset_name, "version": network.asset_version}
    return PaymentRequirement(
        scheme=network.scheme,
        network=network_id,
        resource=tier.resource_id,
        amount=to_minor_units(tier.price_usd, network.decimals),
        currency=network.currency,
        recipient=network.recipient,
        description=tier.description,
        mime_type=tier.mime_type,
        max_timeout_seconds=tier.max_timeout_seconds,
        asset=network.asset,
        decimals=network.decimals,
        extra=extra,
    )


class RequirementRegistry:
    """Read-only catalog mapping resource ids to payment requirements."""

    def __init__(self, settings: PaymentSettings) -> None:
        self._settings = settings
        self._tiers: Dict[str, PricingTier] = {}
        self._offers: Dict[str, Tuple[PaymentRequirement, ...]] = {}

        enabled = settings.enabled_networks()
        for tier in settings.tiers:
            names = tier.networks if tier.networks is not None else sorted(enabled)
            offers = tuple(
                _build_requirement(tier, name, enabled[name])
                for name in names
                if name in enabled
            )
            self._tiers[tier.resource_id] = tier
            self._offers[tier.resource_id] = offers

        logger.info(
            "Requirement registry built with %d tiers on networks %s",
            len(self._tiers),
            sorted(enabled),
        )

    def get_requirements(self, resource_id: str) -> List[PaymentRequirement]:
        """Every offering for a resource, in stable network order."""
        offers = self._offers.get(resource_id)
        if not offers:
            raise RequirementNotFound(resource_id)
        return list(offers)

    def get_requirement(self, resource_id: str, network: Optional[str] = None) -> PaymentRequirement:
        """Look up the requirement for a resource, optionally on one network."""
        offers = self.get_requirements(resource_id)
        if network is None:
            return offers[0]
        for requirement in offers:
            if requirement.network == network:
                return requirement
        raise RequirementNotFound(f"{resource_id}@{network}")

    def select_requirement(self, resource_id: str, scheme: str, network: str) -> PaymentRequirement:
        """Return the offering a payload claims, or reject the mismatch."""
        offers = self.get_requirements(resource_id)
        for requirement in offers:
            if requirement.capability == (scheme, network):
                return requirement
        raise SchemeNetworkMismatchError(scheme, network, expected=[r.capability for r in offers])

    def is_issued(self, requirement: PaymentRequirement) -> bool:
        """True when ``requirement`` is exactly one this registry issues."""
        offers = self._offers.get(requirement.resource, ())
        return requirement in offers

    def get_tier(self, resource_id: str) -> PricingTier:
        tier = self._tiers.get(resource_id)
        if tier is None:
            raise RequirementNotFound(resource_id)
        return tier

    def entitlement_hours(self, resource_id: str) -> Optional[int]:
        """Pass duration for a resource, None for one-off purchases."""
        tier = self._tiers.get(resource_id)
        if tier is None:
            return None
        return self._settings.tier_hours(tier)

    def service_type(self, resource_id: str) -> str:
        return self.get_tier(resource_id).effective_service_type

    def list_tiers(self) -> List[PricingTier]:
        return list(self._tiers.values())

    def resource_ids(self) -> List[str]:
        return list(self._tiers)


__all__ = ["RequirementRegistry", "to_minor_units"]
