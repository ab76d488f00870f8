"""Tests for intent event fan-out and the Redis relay."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from unitpay.core.config import settings
from unitpay.services.connections import ConnectionManager, RedisEventPublisher, intent_event, relay_events

from helpers import LP_A, OUTSIDER, USER


def fake_intent(**overrides):
    values = {
        "id": 7,
        "status": "claimed",
        "user_address": USER,
        "lp_address": LP_A,
        "onchain_payment_id": "UPabc",
        "settlement_tx_hash": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_fans_out_to_user_and_lp(self):
        manager = ConnectionManager()
        user_queue = manager.connect(USER.upper().replace("0X", "0x"))
        lp_queue = manager.connect(LP_A)
        other_queue = manager.connect(OUTSIDER)

        delivered = await manager.publish_intent(fake_intent())

        assert delivered == 2
        assert user_queue.get_nowait()["status"] == "claimed"
        assert lp_queue.get_nowait()["intent_id"] == 7
        assert other_queue.empty()

    @pytest.mark.asyncio
    async def test_unclaimed_intent_reaches_user_only(self):
        manager = ConnectionManager()
        manager.connect(USER)
        assert manager.publish(intent_event(fake_intent(lp_address=None))) == 1

    def test_disconnect(self):
        manager = ConnectionManager()
        first = manager.connect(USER)
        second = manager.connect(USER)
        assert manager.subscriber_count(USER) == 2
        manager.disconnect(USER, first)
        assert manager.subscriber_count() == 1
        manager.disconnect(USER, second)
        assert manager.subscriber_count(USER) == 0
        manager.disconnect(USER, second)

    def test_full_queue_drops_event(self):
        manager = ConnectionManager(queue_size=1)
        queue = manager.connect(USER)
        event = intent_event(fake_intent(lp_address=None))
        assert manager.publish(event) == 1
        assert manager.publish(event) == 0
        assert queue.qsize() == 1


class TestRedisEventPublisher:
    @pytest.mark.asyncio
    async def test_publishes_json(self):
        redis = MagicMock()
        redis.publish = AsyncMock()
        await RedisEventPublisher(redis).publish_intent(fake_intent())

        channel, payload = redis.publish.await_args.args
        assert channel == settings.events_channel
        assert json.loads(payload)["onchain_payment_id"] == "UPabc"

    @pytest.mark.asyncio
    async def test_redis_outage_is_logged(self, caplog):
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        await RedisEventPublisher(redis, channel="events").publish({"intent_id": 1})
        assert "Failed to publish" in caplog.text


class FakePubSub:
    def __init__(self, messages):
        self.messages = messages
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message


class TestRelay:
    @pytest.mark.asyncio
    async def test_forwards_messages(self):
        manager = ConnectionManager()
        queue = manager.connect(USER)
        event = intent_event(fake_intent(lp_address=None))
        pubsub = FakePubSub([
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": "not json"},
            {"type": "message", "data": json.dumps(event)},
        ])
        redis = MagicMock()
        redis.pubsub.return_value = pubsub

        await relay_events(manager, redis)

        assert queue.get_nowait() == event
        assert queue.empty()
        pubsub.subscribe.assert_awaited_once_with(settings.events_channel)
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancellation_cleans_up(self):
        manager = ConnectionManager()
        pubsub = FakePubSub([])

        async def never_ends():
            await asyncio.Event().wait()
            yield {}

        pubsub.listen = never_ends
        redis = MagicMock()
        redis.pubsub.return_value = pubsub

        task = asyncio.create_task(relay_events(manager, redis))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        pubsub.unsubscribe.assert_awaited_once()
