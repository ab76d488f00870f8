"""Periodic Celery tasks driving the reconciliation watcher.

- reconcile_intents: converge open intents onto escrow state
- sweep_expired_intents: expire created/claimed intents past their deadline
- retry_stalled_processing: re-dispatch or give up on stuck actions
- poll_escrow_events: apply escrow events since the last pass
- settle_due_escrows: dispatch withdrawals once T+1 has passed
- refund_stranded_escrows: cancel escrows left locked behind closed intents
"""

import logging

from unitpay.db.session import async_session_factory
from unitpay.workers import celery_app, should_retry, worker_loop

logger = logging.getLogger(__name__)


def _watcher():
    from unitpay.services.chain.escrow_adapter import get_escrow_adapter
    from unitpay.services.connections import RedisEventPublisher
    from unitpay.services.reconciliation import ReconciliationWatcher

    return ReconciliationWatcher(async_session_factory, get_escrow_adapter(), RedisEventPublisher())


@celery_app.task(name="reconcile_intents", bind=True, max_retries=3, default_retry_delay=60)
def reconcile_intents(self) -> int:
    """Periodic task: reconcile every open intent with an escrow record."""
    try:
        return worker_loop().run_until_complete(_watcher().reconcile_all())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("reconcile_intents failed")
        raise self.retry(exc=exc)


@celery_app.task(name="reconcile_intent", bind=True, max_retries=3, default_retry_delay=60)
def reconcile_intent(self, intent_id: int) -> str | None:
    """On-demand task: reconcile a single intent."""
    try:
        intent = worker_loop().run_until_complete(_watcher().reconcile_intent(intent_id))
        return intent.status if intent is not None else None
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("reconcile_intent failed for intent %d", intent_id)
        raise self.retry(exc=exc)


@celery_app.task(name="sweep_expired_intents", bind=True, max_retries=3, default_retry_delay=60)
def sweep_expired_intents(self) -> int:
    """Periodic task: expire intents past expires_at and release their quota."""
    try:
        return worker_loop().run_until_complete(_watcher().sweep_expired())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("sweep_expired_intents failed")
        raise self.retry(exc=exc)


@celery_app.task(name="retry_stalled_processing", bind=True, max_retries=3, default_retry_delay=60)
def retry_stalled_processing(self) -> int:
    """Periodic task: retry in-flight actions past the processing timeout."""
    try:
        return worker_loop().run_until_complete(_watcher().retry_stalled_processing())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("retry_stalled_processing failed")
        raise self.retry(exc=exc)


@celery_app.task(name="poll_escrow_events", bind=True, max_retries=3, default_retry_delay=60)
def poll_escrow_events(self) -> int:
    """Periodic task: fetch and apply escrow contract events."""
    try:
        return worker_loop().run_until_complete(_watcher().poll_events())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("poll_escrow_events failed")
        raise self.retry(exc=exc)


@celery_app.task(name="settle_due_escrows", bind=True, max_retries=3, default_retry_delay=60)
def settle_due_escrows(self) -> int:
    """Periodic task: dispatch withdrawals for escrows past the release delay."""
    try:
        return worker_loop().run_until_complete(_watcher().settle_due())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("settle_due_escrows failed")
        raise self.retry(exc=exc)


@celery_app.task(name="refund_stranded_escrows", bind=True, max_retries=3, default_retry_delay=60)
def refund_stranded_escrows(self) -> int:
    """Periodic task: return funds still locked for intents closed locally."""
    try:
        return worker_loop().run_until_complete(_watcher().refund_stranded_escrows())
    except Exception as exc:
        if not should_retry(exc):
            logger.warning("%s not retried: %s", self.name, exc)
            return None
        logger.exception("refund_stranded_escrows failed")
        raise self.retry(exc=exc)
