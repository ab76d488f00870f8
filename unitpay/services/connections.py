"""Intent status events: in-process subscriber registry and Redis relay.

API processes hold a ConnectionManager that WebSocket handlers subscribe
to. Workers publish through RedisEventPublisher; ``relay_events`` forwards
the Redis channel into the API process's manager.
"""

import asyncio
import json
import logging
from collections import defaultdict

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from unitpay.core.config import settings
from unitpay.core.idempotency import get_redis
from unitpay.models.payment_intent import PaymentIntent

logger = logging.getLogger(__name__)


def intent_event(intent: PaymentIntent) -> dict:
    return {
        "type": "intent.status",
        "intent_id": intent.id,
        "status": intent.status,
        "user_address": intent.user_address,
        "lp_address": intent.lp_address,
        "onchain_payment_id": intent.onchain_payment_id,
        "settlement_tx_hash": intent.settlement_tx_hash,
    }


class ConnectionManager:
    """Subscriber queues keyed by lower-cased wallet address or session id."""

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def connect(self, key: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[key.lower()].add(queue)
        logger.info("Subscriber connected for %s", key.lower())
        return queue

    def disconnect(self, key: str, queue: asyncio.Queue) -> None:
        key = key.lower()
        queues = self._subscribers.get(key)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[key]
        logger.info("Subscriber disconnected for %s", key)

    def subscriber_count(self, key: str | None = None) -> int:
        if key is not None:
            return len(self._subscribers.get(key.lower(), ()))
        return sum(len(queues) for queues in self._subscribers.values())

    def publish(self, event: dict) -> int:
        """Fan ``event`` out to the user's and the LP's subscribers."""
        keys = {
            value.lower()
            for value in (event.get("user_address"), event.get("lp_address"))
            if value
        }
        delivered = 0
        for key in keys:
            for queue in list(self._subscribers.get(key, ())):
                try:
                    queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning("Subscriber queue full for %s, dropping event", key)
        return delivered

    async def publish_intent(self, intent: PaymentIntent) -> int:
        return self.publish(intent_event(intent))


class RedisEventPublisher:
    """Publishes intent events on the shared Redis channel."""

    def __init__(self, redis: aioredis.Redis | None = None, channel: str | None = None) -> None:
        self._redis = redis
        self.channel = channel or settings.events_channel

    async def publish(self, event: dict) -> None:
        try:
            r = self._redis or await get_redis()
            await r.publish(self.channel, json.dumps(event, default=str))
        except RedisError:
            logger.exception("Failed to publish event for intent %s", event.get("intent_id"))

    async def publish_intent(self, intent: PaymentIntent) -> None:
        await self.publish(intent_event(intent))


async def relay_events(manager: ConnectionManager, redis: aioredis.Redis | None = None) -> None:
    """Forward events from the Redis channel into ``manager`` until cancelled."""
    r = redis or await get_redis()
    pubsub = r.pubsub()
    await pubsub.subscribe(settings.events_channel)
    logger.info("Relaying intent events from %s", settings.events_channel)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed event on %s", settings.events_channel)
                continue
            manager.publish(event)
    finally:
        await pubsub.unsubscribe(settings.events_channel)
        await pubsub.aclose()
