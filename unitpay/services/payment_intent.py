"""Payment intent store: creation, lookups and guarded transitions.

All status changes go through ``apply_transition`` so that every change is
validated against the state machine and appends exactly one hash-chained
history entry. Writes are guarded by the intent's version column; a
concurrent modification surfaces as StaleStateError and leaves nothing
half-written.
"""

import logging
import re
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from unitpay.core.config import settings
from unitpay.core.errors import (
    CancellationDenied,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
    UnitpayError,
    ValidationError,
)
from unitpay.models.payment_intent import PaymentIntent, as_utc
from unitpay.services import quota
from unitpay.services.intent_state_machine import (
    QUOTA_RELEASING_STATUSES,
    Actor,
    IntentAction,
    IntentStatus,
    build_history_entry,
    main_line_rank,
    parse_status,
    validate_transition,
)

if TYPE_CHECKING:
    from unitpay.services.chain.escrow_adapter import EscrowAdapter

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
ONCHAIN_ID_PREFIX = "UP"

# processing_action while the escrow lock transaction is in flight
LOCK_ACTION = "lock"


class Platform(StrEnum):
    PAYPAL = "paypal"
    OTHER = "other"


def normalize_address(address: str) -> str:
    if not address or not ADDRESS_RE.match(address.strip()):
        raise ValidationError(f"Invalid chain address: {address!r}")
    return address.strip().lower()


def normalize_email(email: str) -> str:
    if not email or not EMAIL_RE.match(email.strip()):
        raise ValidationError(f"Invalid email: {email!r}")
    return email.strip().lower()


def parse_amount(value: Decimal | str | int | float) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount.as_tuple().exponent < -6:
        raise ValidationError("Amount supports at most 6 decimal places")
    return amount


# ---------------------------------------------------------------------------
# Transaction guard and transitions
# ---------------------------------------------------------------------------


@asynccontextmanager
async def guarded_write(
    db: AsyncSession,
    intent_id: int,
    what: str,
    conflict: type[UnitpayError] = StaleStateError,
) -> AsyncIterator[None]:
    """Commit the enclosed mutations, or roll all of them back.

    A lost version check is reported as ``conflict``; any other error is
    re-raised after the rollback.
    """
    try:
        yield
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise conflict(
            f"Intent {intent_id} changed concurrently during {what}",
            {"intent_id": intent_id},
        )
    except Exception:
        await db.rollback()
        raise


def append_history(
    intent: PaymentIntent,
    *,
    actor: str,
    note: str = "",
    tx_hash: str | None = None,
    network: str | None = None,
) -> dict:
    """Append a non-transition entry (same status) to the history."""
    history = list(intent.status_history or [])
    entry = build_history_entry(
        history, intent.status, actor=actor, note=note, tx_hash=tx_hash, network=network,
    )
    intent.status_history = [*history, entry]
    return entry


async def apply_transition(
    db: AsyncSession,
    intent: PaymentIntent,
    action: str,
    actor: str,
    *,
    note: str = "",
    tx_hash: str | None = None,
    network: str | None = None,
) -> IntentStatus:
    """Validate ``action`` and mutate the intent in the current transaction.

    Releases LP quota when the new status ends the claim. Does not commit.
    """
    old_status = intent.status
    new_status = validate_transition(intent.status, action, actor)

    history = list(intent.status_history or [])
    entry = build_history_entry(
        history,
        new_status,
        actor=actor,
        note=note or f"Status changed to {new_status.value} by {actor}",
        tx_hash=tx_hash,
        network=network,
    )
    intent.status = new_status.value
    intent.status_history = [*history, entry]

    if new_status in QUOTA_RELEASING_STATUSES:
        await quota.release_for_intent(db, intent)
        clear_processing(intent)
    if new_status == IntentStatus.CONFIRMED:
        clear_processing(intent)

    logger.info(
        "Intent %s: %s -> %s by %s", intent.id, old_status, new_status.value, actor,
    )
    return new_status


def mark_processing(intent: PaymentIntent, action: str) -> None:
    """Record that an asynchronous action is in flight for the intent."""
    if intent.processing_action != action:
        intent.processing_attempts = 0
    intent.processing_action = action
    intent.processing_started_at = datetime.now(timezone.utc)


def clear_processing(intent: PaymentIntent) -> None:
    intent.processing_action = None
    intent.processing_started_at = None
    intent.processing_attempts = 0


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_intent(db: AsyncSession, intent_id: int) -> PaymentIntent:
    """Load an intent, always re-reading the current row."""
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.id == intent_id)
        .execution_options(populate_existing=True)
    )
    intent = result.scalar_one_or_none()
    if not intent:
        raise NotFoundError(f"Payment intent {intent_id} not found", {"intent_id": intent_id})
    return intent


async def get_intent_by_onchain_id(db: AsyncSession, payment_id: str) -> PaymentIntent | None:
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.onchain_payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_intent_by_order_id(db: AsyncSession, order_id: str) -> PaymentIntent | None:
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.offchain_order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_intents_by_user(
    db: AsyncSession, user_address: str, status: str | None = None,
) -> list[PaymentIntent]:
    query = select(PaymentIntent).where(
        PaymentIntent.user_address == normalize_address(user_address)
    )
    if status:
        query = query.where(PaymentIntent.status == parse_status(status).value)
    result = await db.execute(query.order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc()))
    return list(result.scalars().all())


async def get_intents_by_lp(
    db: AsyncSession, lp_address: str, status: str | None = None,
) -> list[PaymentIntent]:
    query = select(PaymentIntent).where(
        PaymentIntent.lp_address == normalize_address(lp_address)
    )
    if status:
        query = query.where(PaymentIntent.status == parse_status(status).value)
    result = await db.execute(query.order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc()))
    return list(result.scalars().all())


async def get_intents_in_statuses(
    db: AsyncSession,
    statuses: list[str],
    *,
    onchain_only: bool = False,
    updated_since: datetime | None = None,
) -> list[PaymentIntent]:
    query = select(PaymentIntent).where(PaymentIntent.status.in_(statuses))
    if onchain_only:
        query = query.where(PaymentIntent.onchain_payment_id.is_not(None))
    if updated_since is not None:
        query = query.where(PaymentIntent.updated_at >= updated_since)
    result = await db.execute(query.order_by(PaymentIntent.id))
    return list(result.scalars().all())


async def get_intents_for_timeout(
    db: AsyncSession, before: datetime, statuses: list[str],
) -> list[PaymentIntent]:
    """Return intents in given statuses whose expires_at is older than ``before``."""
    result = await db.execute(
        select(PaymentIntent)
        .where(PaymentIntent.status.in_(statuses), PaymentIntent.expires_at < before)
        .order_by(PaymentIntent.id)
    )
    return list(result.scalars().all())


async def get_stalled_processing(db: AsyncSession, before: datetime) -> list[PaymentIntent]:
    result = await db.execute(
        select(PaymentIntent)
        .where(
            PaymentIntent.processing_action.is_not(None),
            PaymentIntent.processing_started_at < before,
        )
        .order_by(PaymentIntent.id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def create_intent(
    db: AsyncSession,
    *,
    amount: Decimal | str,
    currency: str,
    platform: str,
    merchant_email: str,
    user_address: str,
    description: str | None = None,
) -> PaymentIntent:
    """Validate input and persist a new intent in ``created``."""
    amount = parse_amount(amount)
    currency = (currency or "").strip().upper()
    if not CURRENCY_RE.match(currency):
        raise ValidationError(f"Invalid currency: {currency!r}")
    try:
        platform = Platform(platform.strip().lower()).value
    except ValueError:
        raise ValidationError(f"Unsupported platform: {platform!r}")

    intent = PaymentIntent(
        amount=amount,
        currency=currency,
        platform=platform,
        merchant_email=normalize_email(merchant_email),
        user_address=normalize_address(user_address),
        description=description,
        status=IntentStatus.CREATED.value,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=settings.intent_expire_minutes),
        quota_released=False,
        processing_attempts=0,
    )
    intent.status_history = [
        build_history_entry([], IntentStatus.CREATED, actor=Actor.USER, note="Payment intent created")
    ]
    db.add(intent)
    await db.commit()
    await db.refresh(intent)

    logger.info(
        "Created intent %s: %s %s via %s for %s",
        intent.id, amount, currency, platform, intent.user_address,
    )
    return intent


async def system_transition_intent(
    db: AsyncSession,
    intent_id: int,
    action: str,
    *,
    note: str = "",
    tx_hash: str | None = None,
    error: str | None = None,
) -> PaymentIntent:
    """System-initiated transition (workers, reconciliation, bridge)."""
    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, action):
        await apply_transition(db, intent, action, Actor.SYSTEM, note=note, tx_hash=tx_hash,
                               network=settings.chain_network if tx_hash else None)
        if error:
            intent.error_detail = error
        if tx_hash and action == IntentAction.SETTLE:
            intent.settlement_tx_hash = tx_hash
    return intent


async def fail_intent(db: AsyncSession, intent_id: int, error: str) -> PaymentIntent:
    """Move an in-flight intent to its failure status, keeping ``error``.

    Intents that already reached ``confirmed`` go to ``settlement_failed``.
    """
    intent = await get_intent(db, intent_id)
    action = (
        IntentAction.SETTLEMENT_FAIL
        if intent.status == IntentStatus.CONFIRMED
        else IntentAction.FAIL
    )
    async with guarded_write(db, intent_id, action):
        await apply_transition(db, intent, action, Actor.SYSTEM, note=error[:500])
        intent.error_detail = error
        clear_processing(intent)
    return intent


async def record_settlement(db: AsyncSession, intent_id: int, tx_hash: str) -> PaymentIntent:
    """Mark the escrow payout as done; idempotent on an already-settled intent."""
    intent = await get_intent(db, intent_id)
    if intent.status == IntentStatus.SETTLED:
        return intent
    return await system_transition_intent(
        db, intent_id, IntentAction.SETTLE, note="Escrow withdrawn to LP", tx_hash=tx_hash,
    )


async def ensure_onchain_payment_id(db: AsyncSession, intent_id: int) -> PaymentIntent:
    """Generate and persist the on-chain payment id once.

    The id joins the intent to its escrow record, so it is committed before
    any lock call is issued and never regenerated.
    """
    intent = await get_intent(db, intent_id)
    if intent.onchain_payment_id:
        return intent

    async with guarded_write(db, intent_id, "assign on-chain id"):
        # token_urlsafe(16) yields 22 characters
        intent.onchain_payment_id = ONCHAIN_ID_PREFIX + secrets.token_urlsafe(16)
        append_history(
            intent,
            actor=Actor.SYSTEM,
            note=f"On-chain payment id assigned: {intent.onchain_payment_id}",
        )
    logger.info("Intent %s assigned on-chain id %s", intent_id, intent.onchain_payment_id)
    return intent


async def mark_paid(
    db: AsyncSession, intent_id: int, lp_address: str, proof: dict,
) -> PaymentIntent:
    """The claiming LP reports the off-chain payment and attaches proof."""
    lp_address = normalize_address(lp_address)
    intent = await get_intent(db, intent_id)

    if intent.lp_address != lp_address:
        raise PermissionDeniedError("Only the LP holding the claim can mark it paid")
    if intent.status == IntentStatus.PAID:
        return intent

    order_id = str(proof.get("order_id") or "").strip()
    if intent.platform == Platform.PAYPAL and not order_id:
        raise ValidationError("A PayPal payment proof requires an order_id")

    async with guarded_write(db, intent_id, IntentAction.MARK_PAID):
        await apply_transition(
            db, intent, IntentAction.MARK_PAID, Actor.LP,
            note=f"LP reported payment {order_id}".strip(),
        )
        intent.payment_proof = {
            **proof,
            "order_id": order_id or None,
            "submitted_at": datetime.now(timezone.utc).isoformat(),
            "verified": False,
        }
        if order_id:
            intent.offchain_order_id = order_id
    return intent


async def _assert_not_locked(intent: PaymentIntent, escrow: "EscrowAdapter | None") -> None:
    if intent.processing_action == LOCK_ACTION:
        raise CancellationDenied(
            "An on-chain lock is in flight; cancellation is no longer possible",
            {"processing_action": intent.processing_action},
        )
    if intent.lock_tx_hash:
        raise CancellationDenied(
            "Funds are already locked on-chain; cancellation is no longer possible",
            {"lock_tx_hash": intent.lock_tx_hash},
        )
    if escrow is not None and intent.onchain_payment_id:
        record = await escrow.get_payment(intent.onchain_payment_id)
        if record.exists:
            raise CancellationDenied(
                "Funds are already locked on-chain; cancellation is no longer possible",
                {"escrow_status": record.status_name},
            )


async def cancel_intent(
    db: AsyncSession,
    intent_id: int,
    caller_address: str,
    reason: str | None = None,
    escrow: "EscrowAdapter | None" = None,
) -> PaymentIntent:
    """Cancel before the on-chain lock; the user or the claiming LP may do it."""
    caller_address = normalize_address(caller_address)
    intent = await get_intent(db, intent_id)

    if caller_address == intent.user_address:
        actor = Actor.USER
    elif intent.lp_address and caller_address == intent.lp_address:
        actor = Actor.LP
    else:
        raise PermissionDeniedError("Only the requesting user or the claiming LP can cancel")

    if intent.status not in (IntentStatus.CREATED, IntentStatus.CLAIMED):
        raise InvalidTransitionError(intent.status, IntentAction.CANCEL, actor)
    await _assert_not_locked(intent, escrow)

    async with guarded_write(db, intent_id, IntentAction.CANCEL):
        await apply_transition(
            db, intent, IntentAction.CANCEL, actor,
            note=f"Cancelled by {actor}" + (f": {reason}" if reason else ""),
        )
    return intent


async def confirm_intent(
    db: AsyncSession,
    intent_id: int,
    caller_address: str | None = None,
    escrow: "EscrowAdapter | None" = None,
) -> PaymentIntent:
    """Confirm a verified payment. Re-confirming is a no-op.

    Requires a verified off-chain capture and, when ``escrow`` is given,
    the oracle's confirmation on-chain.
    """
    intent = await get_intent(db, intent_id)

    rank = main_line_rank(intent.status)
    if intent.status == IntentStatus.SETTLEMENT_FAILED or (
        rank is not None and rank >= main_line_rank(IntentStatus.CONFIRMED)
    ):
        return intent

    if caller_address is None:
        actor = Actor.SYSTEM
    elif normalize_address(caller_address) == intent.user_address:
        actor = Actor.USER
    else:
        raise PermissionDeniedError("Only the requesting user can confirm the payment")

    if intent.status != IntentStatus.PAID:
        raise InvalidTransitionError(intent.status, IntentAction.CONFIRM, actor)
    if not (intent.payment_proof or {}).get("verified"):
        raise ValidationError("The off-chain capture has not been verified yet")

    note = "Off-chain capture verified"
    if escrow is not None:
        if not intent.onchain_payment_id:
            raise ValidationError("Intent has no on-chain payment id yet")
        if not await escrow.is_oracle_confirmed(intent.onchain_payment_id):
            raise ValidationError("The oracle has not confirmed the payment yet")
        note = "Off-chain capture and oracle verification confirmed"

    async with guarded_write(db, intent_id, IntentAction.CONFIRM):
        await apply_transition(db, intent, IntentAction.CONFIRM, actor, note=note)
    return intent


def is_expired(intent: PaymentIntent, now: datetime | None = None) -> bool:
    expires_at = as_utc(intent.expires_at)
    return bool(expires_at and expires_at <= (now or datetime.now(timezone.utc)))
