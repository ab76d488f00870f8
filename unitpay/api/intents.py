"""Payment intent endpoints: create, read, cancel, confirm."""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.api.schemas import (
    CallerRequest,
    CancelIntentRequest,
    CreateIntentRequest,
    IntentDetailResponse,
    IntentResponse,
)
from unitpay.core.config import settings
from unitpay.core.deps import get_connections, get_db, get_escrow
from unitpay.core.rate_limit import limiter
from unitpay.services import matching
from unitpay.services import payment_intent as intent_svc
from unitpay.services.chain.escrow_adapter import EscrowAdapter
from unitpay.services.connections import ConnectionManager
from unitpay.services.intent_state_machine import Actor, get_available_actions, verify_history
from unitpay.services.settlement import begin_escrow_lock

router = APIRouter(prefix="/intents", tags=["intents"])


def _detail(intent, actor: str = Actor.USER) -> IntentDetailResponse:
    resp = IntentDetailResponse.model_validate(intent)
    resp.available_actions = get_available_actions(intent.status, actor)
    resp.history_valid = verify_history(intent.status_history or [])
    return resp


@router.post("", response_model=IntentResponse, status_code=201)
@limiter.limit(settings.rate_limit_mutations)
async def create_intent(
    request: Request,
    body: CreateIntentRequest,
    auto_match: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    escrow: EscrowAdapter | None = Depends(get_escrow),
    connections: ConnectionManager = Depends(get_connections),
):
    """Create a payment intent; optionally hand it straight to the cheapest LP."""
    intent = await intent_svc.create_intent(
        db,
        amount=body.amount,
        currency=body.currency,
        platform=body.platform,
        merchant_email=body.merchant_email,
        user_address=body.user_address,
        description=body.description,
    )
    if auto_match:
        intent_id = intent.id
        claimed = await matching.auto_claim(db, intent_id)
        if claimed is not None:
            intent = await begin_escrow_lock(db, escrow, intent_id)
        else:
            intent = await intent_svc.get_intent(db, intent_id)
    await connections.publish_intent(intent)
    return intent


@router.get("/user/{user_address}", response_model=list[IntentResponse])
async def list_user_intents(
    user_address: str,
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await intent_svc.get_intents_by_user(db, user_address, status)


@router.get("/lp/{lp_address}", response_model=list[IntentResponse])
async def list_lp_intents(
    lp_address: str,
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await intent_svc.get_intents_by_lp(db, lp_address, status)


@router.get("/{intent_id}", response_model=IntentDetailResponse)
async def get_intent(intent_id: int, db: AsyncSession = Depends(get_db)):
    intent = await intent_svc.get_intent(db, intent_id)
    return _detail(intent)


@router.post("/{intent_id}/cancel", response_model=IntentResponse)
@limiter.limit(settings.rate_limit_mutations)
async def cancel_intent(
    request: Request,
    intent_id: int,
    body: CancelIntentRequest,
    db: AsyncSession = Depends(get_db),
    escrow: EscrowAdapter | None = Depends(get_escrow),
    connections: ConnectionManager = Depends(get_connections),
):
    """Cancel before the on-chain lock. Denied once funds are locked."""
    intent = await intent_svc.cancel_intent(
        db, intent_id, body.caller_address, body.reason, escrow=escrow,
    )
    await connections.publish_intent(intent)
    return intent


@router.post("/{intent_id}/confirm", response_model=IntentResponse)
@limiter.limit(settings.rate_limit_mutations)
async def confirm_intent(
    request: Request,
    intent_id: int,
    body: CallerRequest,
    db: AsyncSession = Depends(get_db),
    escrow: EscrowAdapter | None = Depends(get_escrow),
    connections: ConnectionManager = Depends(get_connections),
):
    """User confirmation of a verified payment; no-op once confirmed."""
    intent = await intent_svc.confirm_intent(db, intent_id, body.caller_address, escrow=escrow)
    await connections.publish_intent(intent)
    return intent
