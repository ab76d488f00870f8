from fastapi import APIRouter

from unitpay.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/config/public")
async def public_config() -> dict:
    """Public platform configuration (fees, network, lifecycle windows)."""
    return {
        "platform_fee_percent": settings.platform_fee_percent,
        "default_lp_fee_rate": settings.default_lp_fee_rate,
        "chain_network": settings.chain_network,
        "chain_enabled": settings.chain_configured,
        "intent_expire_minutes": settings.intent_expire_minutes,
        "claim_expire_minutes": settings.claim_expire_minutes,
        "withdrawal_delay_hours": settings.withdrawal_delay_hours,
    }
