"""Reconciliation watcher: converges local intent state onto the escrow.

The chain is the source of truth. Each pass re-reads the escrow record for
an intent, maps it to the status the intent should have, and walks the
state machine forward (never backward) to get there. Event delivery is an
accelerator only; the periodic pass is what guarantees convergence.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unitpay.core.config import settings
from unitpay.core.errors import (
    InvalidTransitionError,
    ReconciliationConflict,
    StaleStateError,
    TransientNetworkError,
    UnitpayError,
)
from unitpay.core.idempotency import acquire_poll_lock, get_redis, release_poll_lock
from unitpay.models.payment_intent import PaymentIntent
from unitpay.services.chain.escrow_adapter import EscrowAdapter, EscrowEvent, EscrowRecord, EscrowStatus
from unitpay.services.intent_state_machine import (
    TERMINAL_STATUSES,
    Actor,
    IntentAction,
    IntentStatus,
    forward_path,
)
from unitpay.services.payment_intent import (
    append_history,
    clear_processing,
    fail_intent,
    get_intent,
    get_intent_by_onchain_id,
    get_intents_for_timeout,
    get_intents_in_statuses,
    get_stalled_processing,
    guarded_write,
    system_transition_intent,
)
from unitpay.services.settlement import CANCEL, LOCK, WITHDRAW, dispatch_action, start_processing

logger = logging.getLogger(__name__)

# Escrow status -> status the intent must reach; None means no forward target
ESCROW_TO_INTENT: dict[EscrowStatus, IntentStatus | None] = {
    EscrowStatus.NONE: None,
    EscrowStatus.LOCKED: None,
    EscrowStatus.CONFIRMED: IntentStatus.CONFIRMED,
    EscrowStatus.RELEASED: IntentStatus.SETTLED,
    EscrowStatus.REFUNDED: IntentStatus.REFUNDED,
}

OPEN_STATUSES = [s.value for s in IntentStatus if s not in TERMINAL_STATUSES]
EXPIRABLE_STATUSES = [IntentStatus.CREATED.value, IntentStatus.CLAIMED.value]
SETTLEABLE_STATUSES = [IntentStatus.CONFIRMED.value, IntentStatus.SETTLEMENT_FAILED.value]
# Closed locally; funds found locked for these are returned on-chain
STRANDED_STATUSES = [
    IntentStatus.CANCELLED.value,
    IntentStatus.EXPIRED.value,
    IntentStatus.FAILED.value,
]

EVENT_CURSOR_KEY = "escrow:events:last_block"


class ReconciliationWatcher:
    """Periodic and event-driven convergence of intents onto chain state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        escrow: EscrowAdapter | None,
        publisher=None,
        dispatch: Callable[..., None] = dispatch_action,
    ) -> None:
        self.session_factory = session_factory
        self.escrow = escrow
        self.publisher = publisher
        self.dispatch = dispatch

    async def _publish(self, intent: PaymentIntent) -> None:
        if self.publisher is not None:
            await self.publisher.publish_intent(intent)

    @staticmethod
    def _conflict(intent: PaymentIntent, record: EscrowRecord, reason: str) -> ReconciliationConflict:
        conflict = ReconciliationConflict(
            f"Intent {intent.id} is {intent.status} but escrow is {record.status_name}: {reason}",
            {
                "intent_id": intent.id,
                "local_status": intent.status,
                "escrow_status": record.status_name,
                "payment_id": record.payment_id,
            },
        )
        logger.warning("%s", conflict.message, extra={"conflict": conflict.details})
        return conflict

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    async def reconcile_intent(self, intent_id: int) -> PaymentIntent | None:
        """Drive one intent toward the status its escrow record implies.

        Returns None when another poller holds the intent.
        """
        if self.escrow is None:
            return None
        if not await acquire_poll_lock(intent_id):
            logger.debug("Intent %s is being polled elsewhere", intent_id)
            return None
        try:
            async with self.session_factory() as db:
                return await self._reconcile(db, intent_id)
        finally:
            await release_poll_lock(intent_id)

    async def _reconcile(self, db: AsyncSession, intent_id: int) -> PaymentIntent:
        intent = await get_intent(db, intent_id)
        if intent.status in TERMINAL_STATUSES or not intent.onchain_payment_id:
            return intent

        record = await self.escrow.get_payment(intent.onchain_payment_id)
        target = ESCROW_TO_INTENT[record.status]
        current = intent.status

        if record.exists and current == IntentStatus.CREATED:
            self._conflict(intent, record, "no quota is reserved for an unclaimed intent")
            return intent
        if target is None or current == target:
            return intent

        try:
            path = forward_path(current, target)
        except InvalidTransitionError:
            self._conflict(intent, record, "local status cannot be advanced to match")
            return intent

        note = f"Reconciled: escrow {record.status_name}, local {current}"
        for action in path:
            tx_hash = None
            if action == IntentAction.SETTLE:
                tx_hash = intent.settlement_tx_hash or await self._release_tx_hash(record.payment_id)
                if tx_hash is None:
                    logger.warning("Intent %s settled without an observed release tx", intent_id)
            intent = await system_transition_intent(db, intent_id, action, note=note, tx_hash=tx_hash)
        logger.info("Intent %s reconciled %s -> %s", intent_id, current, intent.status)
        await self._publish(intent)
        return intent

    async def _release_tx_hash(self, payment_id: str) -> str | None:
        """Find the PaymentReleased transaction within the event look-back window."""
        try:
            latest = await self.escrow.latest_block()
            events = await self.escrow.get_events(
                max(latest - settings.event_lookback_blocks, 0), latest,
            )
        except TransientNetworkError as exc:
            logger.warning("Could not scan release events for %s: %s", payment_id, exc.message)
            return None
        for event in reversed(events):
            if event.name == "PaymentReleased" and event.payment_id == payment_id:
                return event.tx_hash
        return None

    async def reconcile_all(self) -> int:
        """Reconcile every open intent that has an escrow record; returns how many moved."""
        if self.escrow is None:
            return 0
        async with self.session_factory() as db:
            snapshot = [
                (intent.id, intent.status)
                for intent in await get_intents_in_statuses(db, OPEN_STATUSES, onchain_only=True)
            ]

        moved = 0
        for intent_id, status in snapshot:
            try:
                intent = await self.reconcile_intent(intent_id)
            except StaleStateError:
                logger.info("Intent %s changed during reconciliation, retrying next pass", intent_id)
                continue
            except UnitpayError as exc:
                logger.warning("Reconciling intent %s failed: %s", intent_id, exc.message)
                continue
            if intent is not None and intent.status != status:
                moved += 1
        if snapshot:
            logger.info("Reconciled %d intents, %d moved", len(snapshot), moved)
        return moved

    async def handle_event(self, event: EscrowEvent) -> PaymentIntent | None:
        """Opportunistic path: resolve the event's intent and reconcile it."""
        async with self.session_factory() as db:
            intent = await get_intent_by_onchain_id(db, event.payment_id)
            if intent is None:
                logger.info("%s for unknown payment %s", event.name, event.payment_id)
                return None
            intent_id = intent.id
            if event.name == "PaymentLocked" and not intent.lock_tx_hash:
                async with guarded_write(db, intent_id, "record lock event"):
                    intent.lock_tx_hash = event.tx_hash
                    append_history(
                        intent,
                        actor=Actor.SYSTEM,
                        note="PaymentLocked observed on-chain",
                        tx_hash=event.tx_hash,
                        network=settings.chain_network,
                    )
            elif event.name == "PaymentReleased" and not intent.settlement_tx_hash:
                async with guarded_write(db, intent_id, "record release event"):
                    intent.settlement_tx_hash = event.tx_hash
        return await self.reconcile_intent(intent_id)

    async def _load_cursor(self) -> int | None:
        try:
            r = await get_redis()
            value = await r.get(EVENT_CURSOR_KEY)
        except RedisError:
            logger.exception("Could not read event cursor, using look-back window")
            return None
        return int(value) if value is not None else None

    async def _save_cursor(self, block: int) -> None:
        try:
            r = await get_redis()
            await r.set(EVENT_CURSOR_KEY, block)
        except RedisError:
            logger.exception("Could not store event cursor at block %s", block)

    async def poll_events(self) -> int:
        """Fetch escrow events since the last pass and apply them."""
        if self.escrow is None:
            return 0
        latest = await self.escrow.latest_block()
        cursor = await self._load_cursor()
        start = max(latest - settings.event_lookback_blocks, 0) if cursor is None else cursor + 1
        if start > latest:
            return 0

        events = await self.escrow.get_events(start, latest)
        for event in events:
            try:
                await self.handle_event(event)
            except UnitpayError as exc:
                logger.warning("Applying %s for %s failed: %s", event.name, event.payment_id, exc.message)
        await self._save_cursor(latest)
        return len(events)

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    async def _locked_on_chain(self, payment_id: str | None, lock_tx_hash: str | None) -> bool:
        if lock_tx_hash:
            return True
        if self.escrow is None or not payment_id:
            return False
        record = await self.escrow.get_payment(payment_id)
        return record.exists

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Expire created/claimed intents past their deadline; returns how many."""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            candidates = [
                (intent.id, intent.onchain_payment_id, intent.lock_tx_hash, intent.processing_action)
                for intent in await get_intents_for_timeout(db, now, EXPIRABLE_STATUSES)
            ]

            expired = 0
            for intent_id, payment_id, lock_tx_hash, action in candidates:
                if action == LOCK:
                    # Not expirable until the lock lands or is given up
                    logger.info("Intent %s expired with its lock in flight, waiting", intent_id)
                    continue
                if action == CANCEL:
                    continue
                if await self._locked_on_chain(payment_id, lock_tx_hash):
                    try:
                        await start_processing(db, intent_id, CANCEL)
                    except StaleStateError:
                        continue
                    logger.info("Intent %s expired after lock, cancelling escrow", intent_id)
                    self.dispatch(CANCEL, intent_id)
                    continue
                try:
                    intent = await system_transition_intent(
                        db, intent_id, IntentAction.EXPIRE, note="Expired before completion",
                    )
                except (StaleStateError, InvalidTransitionError):
                    logger.info("Intent %s already moved on, skipping expiry", intent_id)
                    continue
                expired += 1
                await self._publish(intent)

        if expired:
            logger.info("Expired %d intents", expired)
        return expired

    async def refund_stranded_escrows(self, now: datetime | None = None) -> int:
        """Return funds still locked on-chain for intents closed locally.

        A lock can land after its intent was closed (a lock given up at the
        retry ceiling, a verification mismatch after the lock). Each such
        escrow is reported as a conflict and cancelled on-chain once.
        """
        if self.escrow is None:
            return 0
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=settings.stranded_escrow_scan_hours)
        dispatched = 0
        async with self.session_factory() as db:
            candidates = [
                (intent.id, intent.onchain_payment_id, intent.processing_action)
                for intent in await get_intents_in_statuses(
                    db, STRANDED_STATUSES, onchain_only=True, updated_since=since,
                )
            ]
            for intent_id, payment_id, action in candidates:
                if action == CANCEL:
                    continue
                record = await self.escrow.get_payment(payment_id)
                if record.status != EscrowStatus.LOCKED:
                    continue
                intent = await get_intent(db, intent_id)
                self._conflict(intent, record, "funds are locked for a closed intent")
                try:
                    await start_processing(db, intent_id, CANCEL)
                except StaleStateError:
                    continue
                self.dispatch(CANCEL, intent_id)
                dispatched += 1
        if dispatched:
            logger.info("Dispatched %d stranded escrow refunds", dispatched)
        return dispatched

    async def retry_stalled_processing(self, now: datetime | None = None) -> int:
        """Re-dispatch in-flight actions past their timeout, up to the ceiling."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=settings.processing_timeout_minutes)
        retried = 0
        async with self.session_factory() as db:
            stalled = [
                (intent.id, intent.status, intent.processing_action, intent.processing_attempts or 0)
                for intent in await get_stalled_processing(db, cutoff)
            ]

            for intent_id, status, action, attempts in stalled:
                try:
                    if attempts >= settings.processing_max_retries:
                        await self._give_up(db, intent_id, status, action, attempts)
                        continue

                    intent = await get_intent(db, intent_id)
                    async with guarded_write(db, intent_id, f"retry {action}"):
                        intent.processing_attempts = attempts + 1
                        intent.processing_started_at = now
                except (StaleStateError, InvalidTransitionError):
                    logger.info("Intent %s changed while retrying %s", intent_id, action)
                    continue

                logger.info(
                    "Retrying %s for intent %s (attempt %d/%d)",
                    action, intent_id, attempts + 1, settings.processing_max_retries,
                )
                self.dispatch(action, intent_id)
                retried += 1
        return retried

    async def _give_up(
        self, db: AsyncSession, intent_id: int, status: str, action: str, attempts: int,
    ) -> None:
        error = f"{action} did not complete after {attempts} attempts"
        logger.warning("Intent %s: %s", intent_id, error)
        if status in (IntentStatus.CLAIMED, IntentStatus.PAID, IntentStatus.CONFIRMED):
            intent = await fail_intent(db, intent_id, error)
            await self._publish(intent)
            return
        intent = await get_intent(db, intent_id)
        async with guarded_write(db, intent_id, "clear processing"):
            clear_processing(intent)
            intent.error_detail = error
            append_history(intent, actor=Actor.SYSTEM, note=error)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle_due(self, now: datetime | None = None) -> int:
        """Dispatch withdrawals for confirmed escrows past the T+1 delay."""
        if self.escrow is None:
            return 0
        now = now or datetime.now(timezone.utc)
        dispatched = 0
        async with self.session_factory() as db:
            candidates = [
                (intent.id, intent.onchain_payment_id, intent.processing_action)
                for intent in await get_intents_in_statuses(db, SETTLEABLE_STATUSES, onchain_only=True)
            ]
            for intent_id, payment_id, action in candidates:
                if action == WITHDRAW:
                    continue
                record = await self.escrow.get_payment(payment_id)
                if not record.can_withdraw(now):
                    continue
                try:
                    await start_processing(db, intent_id, WITHDRAW)
                except StaleStateError:
                    continue
                self.dispatch(WITHDRAW, intent_id)
                dispatched += 1
        if dispatched:
            logger.info("Dispatched %d withdrawals", dispatched)
        return dispatched
