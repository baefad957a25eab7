"""x402 payment gate endpoints.

GET  /resource/{id}       - 402 with requirements, or the resource once paid
POST /verify              - facilitator-style check of one proof, nothing recorded
POST /settle              - facilitator-style settlement of one proof
GET  /supported           - (scheme, network) pairs with a verifier
GET  /requirements        - catalog of priced resources
GET  /requirements/{id}   - requirements for one resource
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, StrictInt, ValidationError
from pydantic.alias_generators import to_camel

from basehealth_checkout.models import CheckoutSession, CheckoutState
from basehealth_core.exceptions import (
    AlreadyProcessed,
    ProtocolError,
    RequirementNotFound,
    UnsupportedVersionError,
)
from basehealth_protocol.codec import (
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_requirement,
    encode_requirements,
    encode_settlement_header,
)
from basehealth_protocol.reason_codes import VerificationStatus
from basehealth_protocol.schemas import PaymentRequirement, SettlementResponse, SupportedKind, SupportedResponse

from ..dependencies import PaymentDependencies, get_deps

logger = logging.getLogger(__name__)

router = APIRouter(tags=["x402"])


class SettleRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    x402_version: StrictInt
    payment_header: str
    payment_requirements: Dict[str, Any]


def _echoed_requirement(settle_request: SettleRequest, deps: PaymentDependencies) -> PaymentRequirement:
    """Decode the requirement the client echoed back.

    Raises:
        ProtocolError: unsupported version or malformed requirement.
    """
    if settle_request.x402_version != deps.settings.x402_version:
        raise UnsupportedVersionError(settle_request.x402_version, deps.settings.x402_version)
    return decode_requirement(settle_request.payment_requirements)


async def _read_request(request: Request) -> Optional[SettleRequest]:
    try:
        return SettleRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return None


def _settlement(
    status_code: int,
    success: bool,
    error: Optional[str] = None,
    tx_hash: Optional[str] = None,
    network_id: Optional[str] = None,
) -> JSONResponse:
    body = SettlementResponse(success=success, error=error, tx_hash=tx_hash, network_id=network_id)
    return JSONResponse(status_code=status_code, content=body.to_wire())


def _failure_reason(session: CheckoutSession) -> str:
    attempt = session.current_attempt
    if attempt is not None and attempt.reason:
        return attempt.reason
    return session.error or "payment not verified"


def _pending_status(session: CheckoutSession) -> Optional[VerificationStatus]:
    attempt = session.current_attempt
    if attempt is None:
        return None
    try:
        return VerificationStatus(attempt.status)
    except ValueError:
        return None


def _invalid(status_code: int, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"isValid": False, "invalidReason": reason})


def _payment_required(error: str, retryable: bool) -> JSONResponse:
    return JSONResponse(status_code=402, content={"error": error, "retryable": retryable})


@router.get("/resource/{resource_id}")
async def get_resource(
    resource_id: str,
    x_payment: Optional[str] = Header(None, alias=X_PAYMENT_HEADER),
    deps: PaymentDependencies = Depends(get_deps),
):
    """Serve a priced resource behind an x402 payment.

    Access is granted to the verified sender of the payment, never to a
    caller-supplied identity.
    """
    requirements = deps.registry.get_requirements(resource_id)
    if not x_payment:
        return JSONResponse(status_code=402, content=encode_requirements(requirements))

    try:
        session = await deps.machine.settle(resource_id, x_payment)
    except (ProtocolError, AlreadyProcessed) as exc:
        logger.info("Rejected proof for %s: %s", resource_id, exc.reason)
        return _payment_required(exc.reason, retryable=False)

    if session.state is CheckoutState.RECEIPT:
        receipt = session.receipt
        tier = deps.registry.get_tier(resource_id)
        settlement = SettlementResponse(success=True, tx_hash=receipt.payment_id, network_id=receipt.network)
        return JSONResponse(
            status_code=200,
            content={
                "resource": resource_id,
                "description": tier.description,
                "mimeType": tier.mime_type,
                "receipt": receipt.to_dict(),
            },
            headers={X_PAYMENT_RESPONSE_HEADER: encode_settlement_header(settlement)},
        )

    if session.state is CheckoutState.FAILED:
        return _payment_required(_failure_reason(session), retryable=False)

    return _payment_required(_failure_reason(session), retryable=True)


@router.post("/verify")
async def verify(request: Request, deps: PaymentDependencies = Depends(get_deps)):
    """Check one proof against a requirement this server issued. Records nothing."""
    settle_request = await _read_request(request)
    if settle_request is None:
        return _invalid(400, "invalid verify request")

    try:
        requirement = _echoed_requirement(settle_request, deps)
        if not deps.registry.is_issued(requirement):
            return _invalid(400, "unknown payment requirement")
        result = await deps.machine.verify(settle_request.payment_header, requirement)
    except ProtocolError as exc:
        return _invalid(400, exc.reason)

    if not result.is_valid:
        logger.info("Proof %s did not verify: %s", result.payment_id, result.status.value)
    return JSONResponse(status_code=200, content=result.to_dict())


@router.post("/settle")
async def settle(request: Request, deps: PaymentDependencies = Depends(get_deps)):
    """Verify and record one proof against a requirement this server issued."""
    settle_request = await _read_request(request)
    if settle_request is None:
        return _settlement(400, False, error="invalid settle request")

    try:
        requirement = _echoed_requirement(settle_request, deps)
        if not deps.registry.is_issued(requirement):
            return _settlement(400, False, error="unknown payment requirement", network_id=requirement.network)
        session = await deps.machine.settle(
            requirement.resource,
            settle_request.payment_header,
            requirement=requirement,
        )
    except ProtocolError as exc:
        return _settlement(400, False, error=exc.reason)
    except AlreadyProcessed as exc:
        return _settlement(200, False, error=exc.reason, tx_hash=exc.payment_id)

    if session.state is CheckoutState.RECEIPT:
        return _settlement(200, True, tx_hash=session.receipt.payment_id, network_id=session.receipt.network)

    network_id = session.requirement.network
    if session.state is CheckoutState.FAILED:
        return _settlement(200, False, error=_failure_reason(session), tx_hash=session.payment_id, network_id=network_id)

    if _pending_status(session) is VerificationStatus.NETWORK_ERROR:
        return _settlement(502, False, error=_failure_reason(session), tx_hash=session.payment_id, network_id=network_id)
    return _settlement(200, False, error=_failure_reason(session), tx_hash=session.payment_id, network_id=network_id)


@router.get("/supported")
async def supported(deps: PaymentDependencies = Depends(get_deps)):
    kinds = [SupportedKind(**kind) for kind in deps.verifiers.kinds()]
    return SupportedResponse(kinds=kinds).to_wire()


@router.get("/requirements")
async def list_requirements(deps: PaymentDependencies = Depends(get_deps)):
    resources = []
    for tier in deps.registry.list_tiers():
        try:
            accepts = encode_requirements(deps.registry.get_requirements(tier.resource_id))
        except RequirementNotFound:
            # tier not offered on any enabled network
            accepts = []
        resources.append({
            "resourceId": tier.resource_id,
            "description": tier.description,
            "priceUsd": str(tier.price_usd),
            "serviceType": tier.effective_service_type,
            "entitlementHours": deps.registry.entitlement_hours(tier.resource_id),
            "accepts": accepts,
        })
    return {"x402Version": deps.settings.x402_version, "resources": resources}


@router.get("/requirements/{resource_id}")
async def get_requirements(resource_id: str, deps: PaymentDependencies = Depends(get_deps)):
    return encode_requirements(deps.registry.get_requirements(resource_id))
