"""Access gate: has principal P paid for resource R?

Two grant strategies:

- one-off resources need a ledger entry for the resource, scoped to the
  checkout session when one is given
- passes (tiers with an entitlement duration) need a recent payment for the
  tier's service type; ``validUntil`` is re-derived from ``settledAt`` on
  every call, so expiry needs no background sweep

The gate only reads the ledger.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from basehealth_protocol.registry import RequirementRegistry

from .models import Entitlement, ProcessedPayment, normalize_principal
from .store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AccessDecision:
    has_access: bool
    resource: str
    principal: Optional[str]
    reason: str
    valid_until: Optional[datetime] = None
    source_payment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasAccess": self.has_access,
            "resource": self.resource,
            "principal": self.principal,
            "validUntil": self.valid_until.isoformat() if self.valid_until else None,
            "sourcePaymentId": self.source_payment_id,
            "message": self.reason,
        }


class AccessGate:
    """Combines ledger entries with time-bounded entitlements."""

    def __init__(
        self,
        ledger: LedgerStore,
        registry: RequirementRegistry,
        *,
        lookback_days: int = 30,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._lookback = timedelta(days=lookback_days)

    async def has_access(
        self,
        principal: str,
        resource: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        decision = await self.check(principal, resource, session_id=session_id, now=now)
        return decision.has_access

    async def check(
        self,
        principal: str,
        resource: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        now = now or datetime.now(timezone.utc)
        principal = normalize_principal(principal)

        if resource not in self._registry.resource_ids():
            return AccessDecision(False, resource, principal, "unknown resource")

        if self._registry.entitlement_hours(resource) is not None:
            entitlement = await self.entitlement(
                principal, self._registry.service_type(resource), now=now
            )
            if entitlement is None:
                return AccessDecision(False, resource, principal, "no active pass")
            if not entitlement.is_active(now):
                return AccessDecision(
                    False,
                    resource,
                    principal,
                    "pass expired",
                    valid_until=entitlement.valid_until,
                    source_payment_id=entitlement.source_payment_id,
                )
            return AccessDecision(
                True,
                resource,
                principal,
                "active pass",
                valid_until=entitlement.valid_until,
                source_payment_id=entitlement.source_payment_id,
            )

        entry = await self._one_off_entry(principal, resource, session_id)
        if entry is None:
            return AccessDecision(False, resource, principal, "payment required")
        return AccessDecision(True, resource, principal, "paid", source_payment_id=entry.payment_id)

    async def _one_off_entry(
        self,
        principal: Optional[str],
        resource: str,
        session_id: Optional[str],
    ) -> Optional[ProcessedPayment]:
        if session_id is None:
            if principal is None:
                return None
            return await self._ledger.latest_for_resource(principal, resource)
        for entry in await self._ledger.find_for_session(session_id):
            if entry.resource != resource:
                continue
            if principal is not None and entry.principal not in (None, principal):
                continue
            return entry
        return None

    def _window(self, service_type: str) -> timedelta:
        longest = max(
            (
                timedelta(hours=self._registry.entitlement_hours(t.resource_id) or 0)
                for t in self._registry.list_tiers()
                if t.is_pass and t.effective_service_type == service_type
            ),
            default=timedelta(0),
        )
        return max(self._lookback, longest)

    async def entitlement(
        self,
        principal: Optional[str],
        service_type: str,
        now: Optional[datetime] = None,
    ) -> Optional[Entitlement]:
        """Derive the entitlement from the most recent qualifying payment."""
        if principal is None:
            return None
        now = now or datetime.now(timezone.utc)
        principal = normalize_principal(principal)
        entry = await self._ledger.latest_for_service(principal, service_type, now - self._window(service_type))
        if entry is None:
            return None
        if entry.required_amount is not None and entry.amount < entry.required_amount:
            logger.warning("Ledger entry %s is below its required amount", entry.payment_id)
            return None
        hours = self._registry.entitlement_hours(entry.resource)
        if hours is None:
            return None
        return Entitlement(
            principal=principal,
            service_type=service_type,
            source_payment_id=entry.payment_id,
            resource=entry.resource,
            settled_at=entry.settled_at,
            duration=timedelta(hours=hours),
        )


__all__ = ["AccessGate", "AccessDecision"]
