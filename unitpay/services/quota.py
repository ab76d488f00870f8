"""LP quota ledger.

Every mutation is a single conditional UPDATE on the LP row, so the guard
and the write happen atomically per LP regardless of how many workers
claim against the same provider. Callers own the surrounding transaction.
"""

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.core.errors import NotFoundError, QuotaExceeded
from unitpay.models.liquidity_provider import LiquidityProvider
from unitpay.models.payment_intent import PaymentIntent

logger = logging.getLogger(__name__)


async def _explain_rejection(db: AsyncSession, lp_address: str, amount: Decimal) -> QuotaExceeded:
    result = await db.execute(
        select(LiquidityProvider)
        .where(LiquidityProvider.address == lp_address)
        .execution_options(populate_existing=True)
    )
    lp = result.scalar_one_or_none()
    if lp is None:
        raise NotFoundError(f"LP {lp_address} is not registered")
    details = {
        "lp_address": lp_address,
        "amount": str(amount),
        "available": str(lp.available_quota),
        "per_transaction_quota": str(lp.per_transaction_quota),
    }
    if not lp.is_active:
        return QuotaExceeded(f"LP {lp_address} is deactivated", details)
    if Decimal(lp.per_transaction_quota) < amount:
        return QuotaExceeded(
            f"Amount {amount} exceeds per-transaction quota {lp.per_transaction_quota}", details
        )
    return QuotaExceeded(f"Amount {amount} exceeds available quota {lp.available_quota}", details)


async def lock_quota(db: AsyncSession, lp_address: str, amount: Decimal) -> None:
    """Increment ``locked_quota`` by ``amount`` if the LP can take it.

    Raises QuotaExceeded (or NotFoundError) without changing the row otherwise.
    """
    result = await db.execute(
        update(LiquidityProvider)
        .where(
            LiquidityProvider.address == lp_address,
            LiquidityProvider.is_active.is_(True),
            LiquidityProvider.per_transaction_quota >= amount,
            LiquidityProvider.total_quota - LiquidityProvider.locked_quota >= amount,
        )
        .values(locked_quota=LiquidityProvider.locked_quota + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise await _explain_rejection(db, lp_address, amount)


async def release_for_intent(db: AsyncSession, intent: PaymentIntent) -> bool:
    """Return the intent's locked amount to its LP, at most once.

    The ``quota_released`` flag is flushed together with the intent's
    version check, so a concurrent second release fails the whole
    transaction instead of decrementing twice.
    """
    if intent.quota_released or not intent.lp_address:
        return False

    intent.quota_released = True
    result = await db.execute(
        update(LiquidityProvider)
        .where(
            LiquidityProvider.address == intent.lp_address,
            LiquidityProvider.locked_quota >= intent.amount,
        )
        .values(locked_quota=LiquidityProvider.locked_quota - intent.amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.error(
            "Quota ledger out of sync: could not release %s for intent %s from LP %s",
            intent.amount, intent.id, intent.lp_address,
        )
    else:
        logger.info(
            "Released %s quota for intent %s back to LP %s",
            intent.amount, intent.id, intent.lp_address,
        )
    return True
