"""Access checks against the ledger and pass entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..dependencies import PaymentDependencies, get_deps

router = APIRouter(prefix="/access", tags=["access"])


class AccessCheckRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    resource: str = Field(min_length=1)
    principal: str = Field(min_length=1)
    session_id: Optional[str] = None


@router.post("/check")
async def check_access(body: AccessCheckRequest, deps: PaymentDependencies = Depends(get_deps)):
    decision = await deps.access.check(body.principal, body.resource, session_id=body.session_id)
    return decision.to_dict()


@router.get("/pass-status")
async def pass_status(
    principal: str = Query(..., min_length=1),
    service_type: str = Query(..., alias="serviceType", min_length=1),
    deps: PaymentDependencies = Depends(get_deps),
):
    """Current entitlement for a pass service type, derived on every call."""
    now = datetime.now(timezone.utc)
    entitlement = await deps.access.entitlement(principal, service_type, now=now)
    if entitlement is None:
        return {
            "principal": principal,
            "serviceType": service_type,
            "active": False,
            "validUntil": None,
            "sourcePaymentId": None,
        }
    data = entitlement.to_dict()
    data["active"] = entitlement.is_active(now)
    return data
