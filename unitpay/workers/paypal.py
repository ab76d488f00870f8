"""Celery task capturing and verifying an approved PayPal order."""

import logging

from unitpay.core.errors import TransientNetworkError, VerificationMismatch
from unitpay.db.session import async_session_factory
from unitpay.workers import celery_app, should_retry, worker_loop

logger = logging.getLogger(__name__)


@celery_app.task(name="capture_offchain_order", bind=True, max_retries=3, default_retry_delay=60)
def capture_offchain_order(self, intent_id: int, order_id: str | None = None):
    """Capture the intent's PayPal order and run strict verification."""
    from unitpay.services.bridge import VerificationBridge
    from unitpay.services.chain.escrow_adapter import get_escrow_adapter
    from unitpay.services.connections import RedisEventPublisher
    from unitpay.services.payment_intent import get_intent
    from unitpay.services.paypal.client import PayPalClient

    async def _run() -> str:
        bridge = VerificationBridge(PayPalClient(), get_escrow_adapter())
        async with async_session_factory() as db:
            try:
                try:
                    intent = await bridge.capture_and_verify(db, intent_id, order_id)
                except (VerificationMismatch, TransientNetworkError) as exc:
                    # The bridge has already failed the intent
                    logger.warning("Capture for intent %d failed: %s", intent_id, exc.message)
                    intent = await get_intent(db, intent_id)
                await RedisEventPublisher().publish_intent(intent)
                return intent.status
            finally:
                await db.close()

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("capture_offchain_order failed for intent %d", intent_id)
        raise self.retry(exc=exc)
