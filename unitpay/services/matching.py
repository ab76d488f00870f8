"""Matching engine: LP registry, claims and the LP task pool."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.core.config import settings
from unitpay.core.errors import (
    IntentNotClaimable,
    NotFoundError,
    QuotaExceeded,
    ValidationError,
)
from unitpay.models.liquidity_provider import LiquidityProvider
from unitpay.models.payment_intent import PaymentIntent
from unitpay.services import quota
from unitpay.services.intent_state_machine import Actor, IntentAction, IntentStatus
from unitpay.services.payment_intent import (
    Platform,
    apply_transition,
    get_intent,
    guarded_write,
    is_expired,
    normalize_address,
    normalize_email,
    parse_amount,
)

logger = logging.getLogger(__name__)

# An LP sees its own tasks in these statuses alongside the open pool
_OWN_TASK_STATUSES = [
    IntentStatus.CLAIMED.value,
    IntentStatus.PAID.value,
    IntentStatus.CONFIRMED.value,
    IntentStatus.SETTLED.value,
]


def _parse_platforms(platforms: list[str]) -> list[str]:
    parsed: list[str] = []
    for value in platforms or [Platform.PAYPAL.value]:
        try:
            platform = Platform(value.strip().lower()).value
        except ValueError:
            raise ValidationError(f"Unsupported platform: {value!r}")
        if platform not in parsed:
            parsed.append(platform)
    return parsed


def _parse_fee_rate(fee_rate: Decimal | str | None) -> Decimal:
    if fee_rate is None:
        return settings.default_lp_fee_rate
    try:
        rate = Decimal(str(fee_rate))
    except ArithmeticError:
        raise ValidationError(f"Invalid fee rate: {fee_rate!r}")
    if rate < 0 or rate > 100:
        raise ValidationError("Fee rate must be between 0 and 100")
    return rate


# ---------------------------------------------------------------------------
# LP registry
# ---------------------------------------------------------------------------


async def get_lp(db: AsyncSession, address: str) -> LiquidityProvider:
    result = await db.execute(
        select(LiquidityProvider)
        .where(LiquidityProvider.address == normalize_address(address))
        .execution_options(populate_existing=True)
    )
    lp = result.scalar_one_or_none()
    if not lp:
        raise NotFoundError(f"LP {address} is not registered", {"lp_address": address})
    return lp


async def register_lp(
    db: AsyncSession,
    *,
    address: str,
    name: str,
    email: str | None = None,
    platforms: list[str] | None = None,
    total_quota: Decimal | str,
    per_transaction_quota: Decimal | str | None = None,
    fee_rate: Decimal | str | None = None,
) -> LiquidityProvider:
    """Register a new LP with its capacity."""
    address = normalize_address(address)
    if not name or not name.strip():
        raise ValidationError("LP name is required")
    total = parse_amount(total_quota)
    per_tx = parse_amount(per_transaction_quota) if per_transaction_quota is not None else total
    if per_tx > total:
        raise ValidationError("Per-transaction quota cannot exceed total quota")

    existing = await db.execute(
        select(LiquidityProvider.id).where(LiquidityProvider.address == address)
    )
    if existing.scalar_one_or_none() is not None:
        raise ValidationError(f"LP {address} is already registered")

    lp = LiquidityProvider(
        address=address,
        name=name.strip(),
        email=normalize_email(email) if email else None,
        supported_platforms=_parse_platforms(platforms or []),
        total_quota=total,
        per_transaction_quota=per_tx,
        locked_quota=Decimal("0"),
        fee_rate=_parse_fee_rate(fee_rate),
        is_active=True,
    )
    db.add(lp)
    await db.commit()
    await db.refresh(lp)

    logger.info("Registered LP %s (total=%s, per_tx=%s)", address, total, per_tx)
    return lp


async def update_quota(
    db: AsyncSession,
    address: str,
    *,
    total_quota: Decimal | str | None = None,
    per_transaction_quota: Decimal | str | None = None,
) -> LiquidityProvider:
    """Change capacity; the new total may not drop below what is locked."""
    lp = await get_lp(db, address)
    total = parse_amount(total_quota) if total_quota is not None else Decimal(lp.total_quota)
    per_tx = (
        parse_amount(per_transaction_quota)
        if per_transaction_quota is not None
        else min(Decimal(lp.per_transaction_quota), total)
    )
    if total < Decimal(lp.locked_quota):
        raise ValidationError(
            f"Total quota {total} is below the currently locked {lp.locked_quota}",
            {"locked_quota": str(lp.locked_quota)},
        )
    if per_tx > total:
        raise ValidationError("Per-transaction quota cannot exceed total quota")

    # Guarded in the WHERE clause against claims locking quota meanwhile
    result = await db.execute(
        update(LiquidityProvider)
        .where(LiquidityProvider.id == lp.id, LiquidityProvider.locked_quota <= total)
        .values(total_quota=total, per_transaction_quota=per_tx)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        lp = await get_lp(db, address)
        raise ValidationError(
            f"Total quota {total} is below the currently locked {lp.locked_quota}",
            {"locked_quota": str(lp.locked_quota)},
        )
    await db.commit()
    lp = await get_lp(db, address)
    logger.info("LP %s quota updated: total=%s per_tx=%s", lp.address, total, per_tx)
    return lp


async def bind_payout_email(db: AsyncSession, address: str, email: str) -> LiquidityProvider:
    """Record the LP's PayPal payout identity after out-of-band verification."""
    lp = await get_lp(db, address)
    lp.paypal_email = normalize_email(email)
    lp.paypal_verified_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(lp)
    logger.info("LP %s bound PayPal payout email", lp.address)
    return lp


async def deactivate_lp(db: AsyncSession, address: str) -> LiquidityProvider:
    lp = await get_lp(db, address)
    lp.is_active = False
    await db.commit()
    await db.refresh(lp)
    logger.info("LP %s deactivated", lp.address)
    return lp


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


async def claim_intent(db: AsyncSession, intent_id: int, lp_address: str) -> PaymentIntent:
    """Claim a created intent for an LP and lock its quota in one transaction.

    At most one LP ever claims an intent: a concurrent claim loses the
    intent's version check and gets IntentNotClaimable. Quota is locked by a
    conditional update on the LP row, so concurrent claims by one LP cannot
    exceed its total.
    """
    lp_address = normalize_address(lp_address)
    intent = await get_intent(db, intent_id)

    if intent.status != IntentStatus.CREATED:
        raise IntentNotClaimable(
            f"Intent {intent_id} is {intent.status}, not claimable",
            {"intent_id": intent_id, "status": intent.status},
        )
    if is_expired(intent):
        raise IntentNotClaimable(f"Intent {intent_id} has expired", {"intent_id": intent_id})

    lp = await get_lp(db, lp_address)
    if intent.platform not in (lp.supported_platforms or []):
        raise IntentNotClaimable(
            f"LP does not support platform {intent.platform}",
            {"intent_id": intent_id, "platform": intent.platform},
        )
    if intent.platform == Platform.PAYPAL and not lp.paypal_email:
        raise ValidationError("LP has no verified PayPal payout email")
    payout_email = lp.paypal_email

    async with guarded_write(db, intent_id, IntentAction.CLAIM, conflict=IntentNotClaimable):
        await quota.lock_quota(db, lp_address, Decimal(intent.amount))
        await apply_transition(
            db, intent, IntentAction.CLAIM, Actor.LP, note=f"Claimed by LP {lp_address}",
        )
        intent.lp_address = lp_address
        intent.lp_payout_email = payout_email
        intent.quota_released = False
        intent.expires_at = datetime.now(timezone.utc) + timedelta(
            minutes=settings.claim_expire_minutes
        )
    return intent


async def release_quota(db: AsyncSession, intent_id: int) -> bool:
    """Release an intent's locked quota if not already released.

    Normally called implicitly by the settle/cancel/expire/fail/refund
    transitions; exposed for operator repair.
    """
    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, "release quota"):
        released = await quota.release_for_intent(db, intent)
    return released


async def find_candidates(db: AsyncSession, intent: PaymentIntent) -> list[LiquidityProvider]:
    """Active LPs that could take the intent, cheapest then roomiest first."""
    amount = Decimal(intent.amount)
    result = await db.execute(
        select(LiquidityProvider).where(
            LiquidityProvider.is_active.is_(True),
            LiquidityProvider.per_transaction_quota >= amount,
            LiquidityProvider.total_quota - LiquidityProvider.locked_quota >= amount,
        )
    )
    candidates = [
        lp for lp in result.scalars().all()
        if intent.platform in (lp.supported_platforms or [])
        and (intent.platform != Platform.PAYPAL or lp.paypal_email)
    ]
    candidates.sort(key=lambda lp: (Decimal(lp.fee_rate), -lp.available_quota))
    return candidates


async def auto_claim(db: AsyncSession, intent_id: int) -> PaymentIntent | None:
    """Try candidate LPs in order; return the claimed intent or None."""
    intent = await get_intent(db, intent_id)
    # A failed claim rolls the session back, so keep plain addresses
    addresses = [lp.address for lp in await find_candidates(db, intent)]
    for address in addresses:
        try:
            return await claim_intent(db, intent_id, address)
        except QuotaExceeded:
            logger.info("Auto-match: LP %s lost capacity for intent %s", address, intent_id)
            continue
    logger.info("Auto-match: no LP available for intent %s", intent_id)
    return None


# ---------------------------------------------------------------------------
# Task pool
# ---------------------------------------------------------------------------


async def get_task_pool(
    db: AsyncSession,
    lp_address: str,
    *,
    platform: str | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
) -> list[PaymentIntent]:
    """Open intents the LP could claim plus the LP's own tasks."""
    lp = await get_lp(db, lp_address)
    platforms = list(lp.supported_platforms or [])
    if platform:
        platforms = [p for p in platforms if p == platform.strip().lower()]

    now = datetime.now(timezone.utc)
    open_filter = (
        (PaymentIntent.status == IntentStatus.CREATED.value)
        & PaymentIntent.platform.in_(platforms)
        & ((PaymentIntent.expires_at.is_(None)) | (PaymentIntent.expires_at > now))
    )
    if min_amount is not None:
        open_filter = open_filter & (PaymentIntent.amount >= min_amount)
    if max_amount is not None:
        open_filter = open_filter & (PaymentIntent.amount <= max_amount)

    own_filter = (PaymentIntent.lp_address == lp.address) & PaymentIntent.status.in_(
        _OWN_TASK_STATUSES
    )
    result = await db.execute(
        select(PaymentIntent)
        .where(or_(open_filter, own_filter))
        .order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
    )
    return list(result.scalars().all())


async def get_task(db: AsyncSession, intent_id: int, lp_address: str) -> PaymentIntent:
    """A task visible to this LP: still open, or claimed by it."""
    lp_address = normalize_address(lp_address)
    intent = await get_intent(db, intent_id)
    if intent.status == IntentStatus.CREATED or intent.lp_address == lp_address:
        return intent
    raise NotFoundError(f"Task {intent_id} not found", {"intent_id": intent_id})
