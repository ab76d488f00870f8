"""Celery tasks to run escrow operations (lock/proof/withdraw/cancel) in background."""

import logging

from unitpay.core.errors import ChainRevertError, EscrowNotReady
from unitpay.db.session import async_session_factory
from unitpay.workers import celery_app, should_retry, worker_loop

logger = logging.getLogger(__name__)


async def _run_operation(name: str, intent_id: int) -> str | None:
    from unitpay.services import settlement
    from unitpay.services.chain.escrow_adapter import get_escrow_adapter
    from unitpay.services.connections import RedisEventPublisher
    from unitpay.services.payment_intent import get_intent

    escrow = get_escrow_adapter()
    if escrow is None:
        logger.warning("Chain not configured, skipping %s for intent %d", name, intent_id)
        return None

    operation = getattr(settlement, name)
    async with async_session_factory() as db:
        try:
            try:
                intent = await operation(db, escrow, intent_id)
            except EscrowNotReady as exc:
                logger.info("%s for intent %d not ready: %s", name, intent_id, exc.message)
                return None
            except ChainRevertError as exc:
                # The intent already carries the failure
                logger.warning("%s for intent %d reverted: %s", name, intent_id, exc.reason)
                intent = await get_intent(db, intent_id)
                await RedisEventPublisher().publish_intent(intent)
                return intent.status
            await RedisEventPublisher().publish_intent(intent)
            return intent.status
        finally:
            await db.close()


@celery_app.task(name="lock_intent_funds", bind=True, max_retries=3, default_retry_delay=60)
def lock_intent_funds(self, intent_id: int):
    """Background task to lock an intent's funds in escrow."""
    try:
        return worker_loop().run_until_complete(_run_operation("lock_funds", intent_id))
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("lock_intent_funds failed for intent %d", intent_id)
        raise self.retry(exc=exc)


@celery_app.task(name="submit_offchain_proof", bind=True, max_retries=3, default_retry_delay=60)
def submit_offchain_proof(self, intent_id: int):
    """Background task to submit a verified PayPal order id to the escrow oracle."""
    try:
        return worker_loop().run_until_complete(_run_operation("submit_proof", intent_id))
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("submit_offchain_proof failed for intent %d", intent_id)
        raise self.retry(exc=exc)


@celery_app.task(name="trigger_escrow_withdraw", bind=True, max_retries=3, default_retry_delay=60)
def trigger_escrow_withdraw(self, intent_id: int):
    """Background task to withdraw escrowed funds to the LP."""
    try:
        return worker_loop().run_until_complete(_run_operation("withdraw", intent_id))
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("trigger_escrow_withdraw failed for intent %d", intent_id)
        raise self.retry(exc=exc)


@celery_app.task(name="cancel_expired_escrow", bind=True, max_retries=3, default_retry_delay=60)
def cancel_expired_escrow(self, intent_id: int):
    """Background task to return funds for an intent that expired after its lock."""
    try:
        return worker_loop().run_until_complete(_run_operation("cancel_expired", intent_id))
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("cancel_expired_escrow failed for intent %d", intent_id)
        raise self.retry(exc=exc)
