"""Unit tests for the Redis invalidation bus."""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import redis

from kpi_engine.infrastructure.cache.invalidation_bus import RedisInvalidationBus

NOW = datetime(2025, 12, 2, 8, 0, tzinfo=timezone.utc)


class FakePubSub:
    """Replays queued messages, then reports nothing."""

    def __init__(self, messages) -> None:
        self.messages = list(messages)
        self.subscribed: list[str] = []
        self.closed = False
        self.on_empty = None

    def subscribe(self, channel):
        self.subscribed.append(channel)

    def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        if self.messages:
            item = self.messages.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.on_empty is not None:
            self.on_empty()
        return None

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    mock = MagicMock()
    mock.now.return_value = NOW
    return mock


def _message(payload) -> dict:
    data = payload if isinstance(payload, (bytes, str)) else json.dumps(payload).encode()
    return {"type": "message", "channel": b"cache:invalidation", "data": data}


@pytest.mark.asyncio
async def test_publish_serializes_exact_sets(clock):
    client = MagicMock()
    client.publish.return_value = 3
    bus = RedisInvalidationBus(client, clock)

    await bus.publish("M1", ["KC1001", "KC1002"], ["20251201"])

    channel, payload = client.publish.call_args[0]
    assert channel == "cache:invalidation"
    body = json.loads(payload)
    assert body["modelId"] == "M1"
    assert body["metricIds"] == ["KC1001", "KC1002"]
    assert body["timePoints"] == ["20251201"]
    assert body["timestamp"].startswith("2025-12-02T08:00:00")


@pytest.mark.asyncio
async def test_subscribe_delivers_events_and_skips_bad_messages(clock):
    pubsub = FakePubSub(
        [
            _message(b"not json"),
            _message({"modelId": "M1", "metricIds": [], "timePoints": ["20251201"], "timestamp": NOW.isoformat()}),
            redis.ConnectionError("blip"),
            {"type": "subscribe", "data": 1},
            _message(
                {
                    "modelId": "M1",
                    "metricIds": ["KC1001"],
                    "timePoints": ["20251201", "20251202"],
                    "timestamp": NOW.isoformat(),
                }
            ),
        ]
    )
    client = MagicMock()
    client.pubsub.return_value = pubsub
    bus = RedisInvalidationBus(client, clock, poll_timeout=0.01)
    pubsub.on_empty = bus.stop
    received = []

    async def handler(event):
        received.append(event)

    await asyncio.wait_for(bus.subscribe(handler), timeout=5)

    assert pubsub.subscribed == ["cache:invalidation"]
    assert pubsub.closed
    assert len(received) == 1
    assert received[0].model_id == "M1"
    assert received[0].pairs() == [("KC1001", "20251201"), ("KC1001", "20251202")]


@pytest.mark.asyncio
async def test_handler_failure_does_not_stop_subscription(clock):
    payload = {"modelId": "M1", "metricIds": ["KC1001"], "timePoints": ["20251201"], "timestamp": NOW.isoformat()}
    pubsub = FakePubSub([_message(payload), _message(payload)])
    client = MagicMock()
    client.pubsub.return_value = pubsub
    bus = RedisInvalidationBus(client, clock, poll_timeout=0.01)
    pubsub.on_empty = bus.stop
    calls = []

    async def handler(event):
        calls.append(event)
        raise RuntimeError("boom")

    await asyncio.wait_for(bus.subscribe(handler), timeout=5)

    assert len(calls) == 2
