"""On-chain legs of an intent: lock, proof submission, withdrawal, cancel.

Each function reads the intent, issues one escrow call and records the
outcome. Chain failures are mapped onto the intent's failure statuses;
EscrowNotReady leaves the intent untouched so the watcher retries later.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from unitpay.core.config import settings
from unitpay.core.errors import (
    ChainRevertError,
    ChainTimeoutError,
    EscrowNotReady,
    InvalidTransitionError,
    ValidationError,
)
from unitpay.models.payment_intent import PaymentIntent
from unitpay.services.chain.escrow_adapter import EscrowAdapter, EscrowStatus
from unitpay.services.intent_state_machine import (
    TERMINAL_STATUSES,
    Actor,
    IntentAction,
    IntentStatus,
)
from unitpay.services.payment_intent import (
    LOCK_ACTION,
    append_history,
    clear_processing,
    ensure_onchain_payment_id,
    fail_intent,
    get_intent,
    guarded_write,
    mark_processing,
    record_settlement,
    system_transition_intent,
)

logger = logging.getLogger(__name__)

# Values of PaymentIntent.processing_action
LOCK = LOCK_ACTION
SUBMIT_PROOF = "submit_proof"
WITHDRAW = "withdraw"
CAPTURE = "capture"
CANCEL = "cancel"

TASKS_BY_ACTION = {
    LOCK: "lock_intent_funds",
    SUBMIT_PROOF: "submit_offchain_proof",
    WITHDRAW: "trigger_escrow_withdraw",
    CAPTURE: "capture_offchain_order",
    CANCEL: "cancel_expired_escrow",
}


def dispatch_action(action: str, intent_id: int, *args) -> None:
    """Queue the worker task that performs ``action`` for an intent."""
    from unitpay.workers import celery_app

    celery_app.send_task(TASKS_BY_ACTION[action], args=[intent_id, *args])
    logger.info("Dispatched %s for intent %s", TASKS_BY_ACTION[action], intent_id)


async def start_processing(db: AsyncSession, intent_id: int, action: str) -> PaymentIntent:
    """Persist the in-flight marker before a background action is dispatched."""
    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, f"start {action}"):
        mark_processing(intent, action)
    return intent


async def _note_error(db: AsyncSession, intent_id: int, error: str) -> PaymentIntent:
    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, "record error"):
        intent.error_detail = error
        append_history(intent, actor=Actor.SYSTEM, note=error[:500])
    return intent


async def begin_escrow_lock(
    db: AsyncSession, escrow: EscrowAdapter | None, intent_id: int,
) -> PaymentIntent:
    """Queue the escrow lock for a freshly claimed intent.

    Without a chain this is a no-op. Otherwise the payment id is assigned
    and the lock is marked in flight before the task is dispatched, so
    cancellation is refused from this point on.
    """
    if escrow is None:
        return await get_intent(db, intent_id)
    await ensure_onchain_payment_id(db, intent_id)
    intent = await start_processing(db, intent_id, LOCK)
    dispatch_action(LOCK, intent_id)
    return intent


async def lock_funds(db: AsyncSession, escrow: EscrowAdapter, intent_id: int) -> PaymentIntent:
    """Lock the intent's amount in escrow for its LP."""
    intent = await ensure_onchain_payment_id(db, intent_id)
    if intent.lock_tx_hash:
        return intent

    # Re-read right before the chain call. The marker write is versioned, so
    # a cancel or expiry committed since the claim makes it fail here.
    intent = await get_intent(db, intent_id)
    if intent.status not in (IntentStatus.CLAIMED, IntentStatus.PAID):
        raise InvalidTransitionError(intent.status, LOCK, Actor.SYSTEM)
    async with guarded_write(db, intent_id, "begin lock"):
        mark_processing(intent, LOCK)

    payment_id = intent.onchain_payment_id
    lp_address = intent.lp_address
    amount = Decimal(intent.amount)

    try:
        result = await escrow.lock(lp_address, amount, payment_id, settings.chain_network)
    except ChainRevertError as exc:
        logger.warning("Lock for intent %s reverted: %s", intent_id, exc.reason)
        await fail_intent(db, intent_id, exc.message)
        raise

    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, "record lock"):
        if result is not None:
            intent.lock_tx_hash = result.tx_hash
            append_history(
                intent,
                actor=Actor.SYSTEM,
                note=f"Funds locked on-chain ({amount} for {lp_address})",
                tx_hash=result.tx_hash,
                network=settings.chain_network,
            )
        else:
            append_history(intent, actor=Actor.SYSTEM, note="Escrow already locked on-chain")
        if intent.processing_action == LOCK:
            clear_processing(intent)
    return intent


async def submit_proof(db: AsyncSession, escrow: EscrowAdapter, intent_id: int) -> PaymentIntent:
    """Hand the verified PayPal order id to the escrow's oracle.

    The intent stays ``paid`` with processing action ``submit_proof`` until
    the watcher observes the oracle's confirmation.
    """
    intent = await get_intent(db, intent_id)
    if intent.status != IntentStatus.PAID:
        if intent.status in (IntentStatus.CONFIRMED, IntentStatus.SETTLED):
            return intent
        raise InvalidTransitionError(intent.status, SUBMIT_PROOF, Actor.SYSTEM)
    if not (intent.payment_proof or {}).get("verified") or not intent.offchain_order_id:
        raise ValidationError("Intent has no verified off-chain capture to submit")
    if not intent.onchain_payment_id:
        raise EscrowNotReady(f"Intent {intent_id} has no on-chain payment id yet")

    payment_id = intent.onchain_payment_id
    order_id = intent.offchain_order_id

    try:
        result = await escrow.submit_offchain_proof(payment_id, order_id)
    except ChainRevertError as exc:
        logger.warning("Proof submission for intent %s reverted: %s", intent_id, exc.reason)
        await fail_intent(db, intent_id, exc.message)
        raise

    if result is None:
        return await get_intent(db, intent_id)

    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, "record proof submission"):
        append_history(
            intent,
            actor=Actor.SYSTEM,
            note=f"Order {order_id} submitted for oracle verification",
            tx_hash=result.tx_hash,
            network=settings.chain_network,
        )
    return intent


async def withdraw(
    db: AsyncSession,
    escrow: EscrowAdapter,
    intent_id: int,
    now: datetime | None = None,
) -> PaymentIntent:
    """Release escrowed funds to the LP and settle the intent."""
    intent = await get_intent(db, intent_id)
    if intent.status == IntentStatus.SETTLED:
        return intent
    if intent.status not in (IntentStatus.CONFIRMED, IntentStatus.SETTLEMENT_FAILED):
        raise InvalidTransitionError(intent.status, WITHDRAW, Actor.SYSTEM)
    if not intent.onchain_payment_id:
        raise ValidationError(f"Intent {intent_id} has no on-chain payment id")

    payment_id = intent.onchain_payment_id
    status = intent.status

    try:
        result = await escrow.withdraw(payment_id, now)
    except EscrowNotReady:
        raise
    except (ChainRevertError, ChainTimeoutError) as exc:
        logger.warning("Withdraw for intent %s failed: %s", intent_id, exc.message)
        if status == IntentStatus.CONFIRMED:
            await fail_intent(db, intent_id, exc.message)
        else:
            await _note_error(db, intent_id, exc.message)
        raise

    return await record_settlement(db, intent_id, result.tx_hash)


async def _refund_stranded(db: AsyncSession, escrow: EscrowAdapter, intent_id: int) -> PaymentIntent:
    intent = await get_intent(db, intent_id)
    record = await escrow.get_payment(intent.onchain_payment_id)
    result = None
    if record.status == EscrowStatus.LOCKED:
        result = await escrow.cancel(intent.onchain_payment_id)

    intent = await get_intent(db, intent_id)
    async with guarded_write(db, intent_id, "record stranded refund"):
        if result is not None:
            append_history(
                intent,
                actor=Actor.SYSTEM,
                note=f"Escrow locked for a {intent.status} intent returned on-chain",
                tx_hash=result.tx_hash,
                network=settings.chain_network,
            )
            logger.warning("Returned stranded escrow for %s intent %s", intent.status, intent_id)
        if intent.processing_action == CANCEL:
            clear_processing(intent)
    return intent


async def cancel_expired(db: AsyncSession, escrow: EscrowAdapter, intent_id: int) -> PaymentIntent:
    """Return locked funds for an intent that expired after its lock.

    Also returns funds still locked for an intent that was closed locally
    (cancelled, expired or failed); that intent keeps its status and only
    records the refund.
    """
    intent = await get_intent(db, intent_id)
    if intent.status in TERMINAL_STATUSES:
        if intent.status in (IntentStatus.SETTLED, IntentStatus.REFUNDED) or not intent.onchain_payment_id:
            return intent
        return await _refund_stranded(db, escrow, intent_id)
    if not intent.onchain_payment_id:
        raise ValidationError(f"Intent {intent_id} has no on-chain payment id")

    result = await escrow.cancel(intent.onchain_payment_id)
    tx_hash = result.tx_hash if result else None

    intent = await get_intent(db, intent_id)
    if intent.status == IntentStatus.CREATED:
        action = IntentAction.EXPIRE
    else:
        action = IntentAction.REFUND
    return await system_transition_intent(
        db, intent_id, action, note="Expired escrow cancelled on-chain", tx_hash=tx_hash,
    )
