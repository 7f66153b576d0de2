from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import realtime_relay_restarts_total
from huddle.realtime import EventBus, RedisRelay, RelayConfig, RelayUnavailableError


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.unregister(channel, self)
            self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedis:
    def __init__(self) -> None:
        self.online = True
        self._pubsubs: dict[str, set[FakePubSub]] = {}

    async def ping(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online:
            raise ConnectionError("offline")
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def close(self) -> None:
        self.fail()
        self._pubsubs.clear()

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        subscribers = self._pubsubs.get(channel)
        if not subscribers:
            return
        subscribers.discard(pubsub)
        if not subscribers:
            self._pubsubs.pop(channel, None)

    def fail(self) -> None:
        self.online = False
        for subscribers in list(self._pubsubs.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)


class FakeRedisFactory:
    """Hands out a fresh client for every connection attempt."""

    def __init__(self) -> None:
        self.instances: list[FakeRedis] = []

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis()
        self.instances.append(client)
        return client


@pytest.fixture()
def redis_factory(monkeypatch) -> FakeRedisFactory:
    factory = FakeRedisFactory()
    monkeypatch.setattr(
        "huddle.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=factory.from_url),
    )
    monkeypatch.setattr("huddle.realtime.transport._RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("huddle.realtime.transport._RECOVERY_MAX_DELAY", 0.05)
    return factory


def _restarts() -> float:
    return sum(
        realtime_relay_restarts_total.value(reason)
        for reason in ("publish_failed", "reader_stopped", "subscribe_failed")
    )


@pytest.mark.anyio("asyncio")
async def test_unconfigured_relay_refuses_to_publish() -> None:
    relay = RedisRelay(RelayConfig(redis_url=None))

    assert relay.configured is False
    with pytest.raises(RelayUnavailableError):
        await relay.publish("events", {"value": 1})


@pytest.mark.anyio("asyncio")
async def test_channels_are_namespaced() -> None:
    relay = RedisRelay(RelayConfig(redis_url="redis://fake", prefix="huddle.realtime."))

    assert relay.channel_for("events") == "huddle.realtime.events"


@pytest.mark.anyio("asyncio")
async def test_redis_relay_recovers_after_disconnect(redis_factory) -> None:
    before = _restarts()
    relay = RedisRelay(RelayConfig(redis_url="redis://fake"))
    await relay.start()

    received: list[dict[str, Any]] = []
    received_event = asyncio.Event()

    async def handler(payload: dict[str, Any]) -> None:
        received.append(payload)
        received_event.set()

    subscription = await relay.subscribe("events", handler)

    await relay.publish("events", {"value": 1})
    await asyncio.wait_for(received_event.wait(), timeout=1.0)
    received_event.clear()
    received.clear()

    redis_factory.instances[0].fail()
    await asyncio.sleep(0)

    with pytest.raises(RelayUnavailableError):
        await relay.publish("events", {"value": 2})

    for _ in range(50):
        if len(redis_factory.instances) >= 2:
            break
        await asyncio.sleep(0.02)
    else:
        raise AssertionError("Redis client was not recreated")

    for _ in range(20):
        try:
            await relay.publish("events", {"value": 3})
            break
        except RelayUnavailableError:
            await asyncio.sleep(0.05)
    else:
        raise AssertionError("Redis relay did not recover in time")

    await asyncio.wait_for(received_event.wait(), timeout=1.5)

    assert received == [{"value": 3}]
    assert _restarts() >= before + 1

    await subscription.close()
    await relay.stop()


class RecordingSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)


@pytest.mark.anyio("asyncio")
async def test_event_bus_relays_between_nodes(monkeypatch) -> None:
    shared = FakeRedis()
    monkeypatch.setattr(
        "huddle.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=lambda *_args, **_kwargs: shared),
    )

    def node(name: str) -> EventBus:
        relay = RedisRelay(RelayConfig(redis_url="redis://fake", node_id=name))
        return EventBus(relay=relay, node_id=name)

    first, second = node("a"), node("b")
    await first.start()
    await second.start()
    local, remote = RecordingSocket(), RecordingSocket()
    await first.connections.attach_user(5, local)
    await second.connections.attach_user(5, remote)

    await first.publish_to_user(5, "notification", {"title": "hi"})
    for _ in range(50):
        if remote.sent:
            break
        await asyncio.sleep(0.01)

    assert [frame["type"] for frame in local.sent] == ["notification"]
    assert [frame["type"] for frame in remote.sent] == ["notification"]
    assert remote.sent[0]["payload"] == {"title": "hi"}

    await second.stop()
    await first.stop()
