"""LP task pool endpoints: browse, claim, mark paid."""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.api.schemas import ClaimRequest, IntentResponse, MarkPaidRequest
from unitpay.core.config import settings
from unitpay.core.deps import get_connections, get_db, get_escrow
from unitpay.core.rate_limit import limiter
from unitpay.services import matching
from unitpay.services import payment_intent as intent_svc
from unitpay.services.chain.escrow_adapter import EscrowAdapter
from unitpay.services.connections import ConnectionManager
from unitpay.services.settlement import begin_escrow_lock

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("", response_model=list[IntentResponse])
async def task_pool(
    lp_address: str = Query(...),
    platform: str | None = Query(None),
    min_amount: Decimal | None = Query(None, ge=0),
    max_amount: Decimal | None = Query(None, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Open intents the LP can claim, plus the LP's own tasks."""
    return await matching.get_task_pool(
        db, lp_address, platform=platform, min_amount=min_amount, max_amount=max_amount,
    )


@router.get("/{intent_id}", response_model=IntentResponse)
async def get_task(
    intent_id: int,
    lp_address: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    return await matching.get_task(db, intent_id, lp_address)


@router.post("/{intent_id}/claim", response_model=IntentResponse)
@limiter.limit(settings.rate_limit_mutations)
async def claim_task(
    request: Request,
    intent_id: int,
    body: ClaimRequest,
    db: AsyncSession = Depends(get_db),
    escrow: EscrowAdapter | None = Depends(get_escrow),
    connections: ConnectionManager = Depends(get_connections),
):
    """Claim an intent and lock LP quota; with a chain, lock funds in escrow."""
    await matching.claim_intent(db, intent_id, body.lp_address)
    intent = await begin_escrow_lock(db, escrow, intent_id)
    await connections.publish_intent(intent)
    return intent


@router.post("/{intent_id}/paid", response_model=IntentResponse)
@limiter.limit(settings.rate_limit_mutations)
async def mark_paid(
    request: Request,
    intent_id: int,
    body: MarkPaidRequest,
    db: AsyncSession = Depends(get_db),
    connections: ConnectionManager = Depends(get_connections),
):
    """The claiming LP reports its off-chain payment."""
    proof = {**body.proof}
    if body.order_id:
        proof["order_id"] = body.order_id
    intent = await intent_svc.mark_paid(db, intent_id, body.lp_address, proof)
    await connections.publish_intent(intent)
    return intent
