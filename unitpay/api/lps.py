"""Liquidity provider registry endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.api.schemas import (
    BindPayoutEmailRequest,
    LPResponse,
    RegisterLPRequest,
    UpdateQuotaRequest,
)
from unitpay.core.config import settings
from unitpay.core.deps import get_db
from unitpay.core.rate_limit import limiter
from unitpay.services import matching

router = APIRouter(prefix="/lps", tags=["lps"])


@router.post("", response_model=LPResponse, status_code=201)
@limiter.limit(settings.rate_limit_mutations)
async def register_lp(request: Request, body: RegisterLPRequest, db: AsyncSession = Depends(get_db)):
    return await matching.register_lp(
        db,
        address=body.address,
        name=body.name,
        email=body.email,
        platforms=body.platforms,
        total_quota=body.total_quota,
        per_transaction_quota=body.per_transaction_quota,
        fee_rate=body.fee_rate,
    )


@router.get("/{address}", response_model=LPResponse)
async def get_lp(address: str, db: AsyncSession = Depends(get_db)):
    return await matching.get_lp(db, address)


@router.patch("/{address}/quota", response_model=LPResponse)
@limiter.limit(settings.rate_limit_mutations)
async def update_quota(
    request: Request,
    address: str,
    body: UpdateQuotaRequest,
    db: AsyncSession = Depends(get_db),
):
    return await matching.update_quota(
        db, address,
        total_quota=body.total_quota,
        per_transaction_quota=body.per_transaction_quota,
    )


@router.put("/{address}/payout-email", response_model=LPResponse)
@limiter.limit(settings.rate_limit_mutations)
async def bind_payout_email(
    request: Request,
    address: str,
    body: BindPayoutEmailRequest,
    db: AsyncSession = Depends(get_db),
):
    """Bind the PayPal payout email once verified out of band."""
    return await matching.bind_payout_email(db, address, body.email)


@router.post("/{address}/deactivate", response_model=LPResponse)
@limiter.limit(settings.rate_limit_mutations)
async def deactivate_lp(request: Request, address: str, db: AsyncSession = Depends(get_db)):
    return await matching.deactivate_lp(db, address)
