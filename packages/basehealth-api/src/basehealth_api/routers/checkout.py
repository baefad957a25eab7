"""Interactive checkout session endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..dependencies import PaymentDependencies, get_deps

router = APIRouter(prefix="/checkout/sessions", tags=["checkout"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(CamelModel):
    principal: Optional[str] = None
    session_id: Optional[str] = None


class QuoteRequest(CamelModel):
    resource_id: str = Field(min_length=1)
    network: Optional[str] = None


class ConnectWalletRequest(CamelModel):
    scheme: str = Field(min_length=1)
    network: str = Field(min_length=1)
    address: Optional[str] = None


class SubmitProofRequest(CamelModel):
    payment_header: str = Field(min_length=1)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    body: Optional[CreateSessionRequest] = None,
    deps: PaymentDependencies = Depends(get_deps),
):
    body = body or CreateSessionRequest()
    session = await deps.machine.create_session(principal=body.principal, session_id=body.session_id)
    return session.to_public_dict()


@router.get("/{session_id}")
async def get_session(session_id: str, deps: PaymentDependencies = Depends(get_deps)):
    session = await deps.machine.get_session(session_id)
    return session.to_public_dict()


@router.post("/{session_id}/quote")
async def quote(session_id: str, body: QuoteRequest, deps: PaymentDependencies = Depends(get_deps)):
    session = await deps.machine.quote(session_id, body.resource_id, network=body.network)
    return session.to_public_dict()


@router.post("/{session_id}/wallet")
async def connect_wallet(
    session_id: str,
    body: ConnectWalletRequest,
    deps: PaymentDependencies = Depends(get_deps),
):
    session = await deps.machine.connect_wallet(session_id, body.scheme, body.network, address=body.address)
    return session.to_public_dict()


@router.post("/{session_id}/proof")
async def submit_proof(
    session_id: str,
    body: SubmitProofRequest,
    deps: PaymentDependencies = Depends(get_deps),
):
    session = await deps.machine.submit_proof(session_id, body.payment_header)
    return session.to_public_dict()


@router.post("/{session_id}/confirm")
async def confirm(session_id: str, deps: PaymentDependencies = Depends(get_deps)):
    session = await deps.machine.confirm(session_id)
    return session.to_public_dict()


@router.post("/{session_id}/retry")
async def retry(session_id: str, deps: PaymentDependencies = Depends(get_deps)):
    session = await deps.machine.retry(session_id)
    return session.to_public_dict()
