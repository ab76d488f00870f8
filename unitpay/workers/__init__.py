import asyncio

from celery import Celery, signals

from unitpay.core.config import settings
from unitpay.core.errors import UnitpayError
from unitpay.core.logging_config import setup_logging as configure_logging

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


def should_retry(exc: Exception) -> bool:
    """Business-rule errors are final; only transient failures are retried in-task."""
    if isinstance(exc, UnitpayError):
        return exc.retryable
    return True


@signals.setup_logging.connect
def _setup_worker_logging(**kwargs) -> None:
    configure_logging(component="worker")


celery_app = Celery(
    "unitpay_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "reconcile-intents": {
            "task": "reconcile_intents",
            "schedule": settings.reconcile_interval_seconds,
        },
        "sweep-expired-intents-60s": {
            "task": "sweep_expired_intents",
            "schedule": 60.0,
        },
        "retry-stalled-processing-60s": {
            "task": "retry_stalled_processing",
            "schedule": 60.0,
        },
        "poll-escrow-events-15s": {
            "task": "poll_escrow_events",
            "schedule": 15.0,
        },
        "settle-due-escrows-5m": {
            "task": "settle_due_escrows",
            "schedule": 300.0,
        },
        "refund-stranded-escrows-5m": {
            "task": "refund_stranded_escrows",
            "schedule": 300.0,
        },
    },
)

# Import tasks so they are registered with the celery app
import unitpay.workers.reconcile  # noqa: F401, E402
import unitpay.workers.escrow_operations  # noqa: F401, E402
import unitpay.workers.paypal  # noqa: F401, E402
