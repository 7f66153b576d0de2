from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import realtime_relay_errors_total
from app.services import PresenceBroadcaster
from huddle.realtime import (
    EventBus,
    PresenceStatusStore,
    RelayUnavailableError,
    TypingStatusStore,
    build_event,
    stores,
)


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


class FakeRelay:
    """Stand-in for the Redis relay that records or refuses publishes."""

    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.published: list[tuple[str, dict[str, Any]]] = []

    @property
    def configured(self) -> bool:
        return True

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if not self.available:
            raise RelayUnavailableError("offline")
        self.published.append((topic, payload))


def test_build_event_adds_room_id_only_for_room_scope() -> None:
    room_event = build_event("typing-status", {"userId": 1}, room_id=4)
    user_event = build_event("notification", {"title": "hi"})

    assert room_event["type"] == "typing-status"
    assert room_event["roomId"] == 4
    assert "timestamp" in room_event
    assert "roomId" not in user_event


@pytest.mark.anyio("asyncio")
async def test_presence_counts_connections_per_user() -> None:
    store = PresenceStatusStore()
    first, second = object(), object()

    assert await store.mark_online(1, 7, first) == ([7], True)
    assert await store.mark_online(1, 7, second) == ([7], False)
    assert await store.mark_offline(1, 7, first) == ([7], False)
    assert await store.is_online(1, 7) is True
    assert await store.mark_offline(1, 7, second) == ([], True)
    assert await store.mark_offline(1, 7, second) == ([], False)


@pytest.mark.anyio("asyncio")
async def test_typing_store_ignores_repeated_stop_and_expires(monkeypatch) -> None:
    store = TypingStatusStore(ttl_seconds=5)
    assert store.ttl == 5
    clock = [100.0]
    monkeypatch.setattr(stores, "time", SimpleNamespace(monotonic=lambda: clock[0]))

    assert await store.set_status(1, 7, True) == ([7], True)
    assert await store.set_status(1, 7, True) == ([7], True)
    assert await store.set_status(1, 7, False) == ([], True)
    assert await store.set_status(1, 7, False) == ([], False)

    await store.set_status(1, 8, True)
    clock[0] += 6
    assert await store.snapshot(1) == []
    assert await store.sweep() == {1: [8]}
    assert await store.sweep() == {}


@pytest.mark.anyio("asyncio")
async def test_room_events_skip_excluded_sockets_and_users() -> None:
    bus = EventBus()
    alice_socket, bob_socket = DummyWebSocket(), DummyWebSocket()
    await bus.connections.attach_user(1, alice_socket)
    await bus.connections.attach_user(2, bob_socket)
    await bus.connections.join_room(10, alice_socket)
    await bus.connections.join_room(10, bob_socket)

    await bus.publish_to_room(10, "typing-status", {"userId": 1, "isTyping": True}, exclude_user=1)
    await bus.publish_to_room(10, "message-delivered", {"messageId": 3}, exclude={bob_socket})
    await bus.publish_to_user(2, "notification", {"title": "hi"})

    assert alice_socket.types() == ["message-delivered"]
    assert bob_socket.types() == ["typing-status", "notification"]


@pytest.mark.anyio("asyncio")
async def test_closed_sockets_are_skipped() -> None:
    bus = EventBus()
    gone, alive = DummyWebSocket(), DummyWebSocket()
    gone.application_state = WebSocketState.DISCONNECTED
    for socket in (gone, alive):
        await bus.connections.join_room(5, socket)

    delivered = await bus._deliver("room", 5, build_event("ping", {}, room_id=5))

    assert delivered == 1
    assert gone.sent == []


@pytest.mark.anyio("asyncio")
async def test_relay_failure_degrades_to_local_delivery() -> None:
    relay = FakeRelay(available=False)
    bus = EventBus(relay=relay, node_id="node-a")
    socket = DummyWebSocket()
    await bus.connections.join_room(3, socket)
    before = realtime_relay_errors_total.value("room", "unavailable")

    await bus.publish_to_room(3, "new-message", {"id": 1})

    assert socket.types() == ["new-message"]
    assert realtime_relay_errors_total.value("room", "unavailable") == before + 1


@pytest.mark.anyio("asyncio")
async def test_relayed_events_reach_local_sockets_but_not_their_origin() -> None:
    relay = FakeRelay()
    origin = EventBus(relay=relay, node_id="node-a")
    peer = EventBus(node_id="node-b")
    socket = DummyWebSocket()
    await peer.connections.join_room(3, socket)

    await origin.publish_to_room(3, "new-message", {"id": 1}, exclude_user=9)
    [(_, envelope)] = relay.published
    assert envelope["origin"] == "node-a"
    assert envelope["exclude_user"] == 9

    await origin.handle_relayed(envelope)
    await peer.handle_relayed(envelope)

    assert socket.types() == ["new-message"]
    assert socket.sent[0]["roomId"] == 3


@pytest.mark.anyio("asyncio")
async def test_presence_broadcaster_join_typing_and_disconnect() -> None:
    bus = EventBus()
    presence = PresenceBroadcaster(bus)
    alice, bob = DummyWebSocket(), DummyWebSocket()

    await presence.join_chat(1, 10, alice)
    await presence.join_chat(1, 20, bob)

    assert alice.types() == ["room-presence", "user-online"]
    assert bob.types() == ["room-presence"]
    assert bob.sent[0]["payload"]["online"] == [10, 20]

    await presence.set_typing(1, 10, True)
    assert bob.types()[-1] == "typing-status"
    assert alice.types()[-1] == "user-online"

    await presence.disconnect(10, alice)

    assert bob.types()[-2:] == ["typing-status", "user-offline"]
    assert bob.sent[-2]["payload"] == {"userId": 10, "isTyping": False}
    assert await bus.connections.rooms_of(alice) == []
    assert await bus.presence.online(1) == [20]


@pytest.mark.anyio("asyncio")
async def test_lapsed_typing_is_announced_once(monkeypatch) -> None:
    bus = EventBus(typing_ttl_seconds=5)
    presence = PresenceBroadcaster(bus)
    clock = [100.0]
    monkeypatch.setattr(stores, "time", SimpleNamespace(monotonic=lambda: clock[0]))
    typist, watcher = DummyWebSocket(), DummyWebSocket()
    await presence.join_chat(1, 10, typist)
    await presence.join_chat(1, 20, watcher)

    await presence.set_typing(1, 10, True)
    assert await bus.expire_typing() == 0

    clock[0] += 6
    assert await bus.expire_typing() == 1
    assert watcher.sent[-1]["payload"] == {"userId": 10, "isTyping": False}
    assert typist.types()[-1] != "typing-status"

    assert await bus.expire_typing() == 0
    await presence.set_typing(1, 10, False)
    assert watcher.types().count("typing-status") == 2


@pytest.mark.anyio("asyncio")
async def test_stop_after_unannounced_lapse_still_reaches_peers(monkeypatch) -> None:
    bus = EventBus(typing_ttl_seconds=5)
    presence = PresenceBroadcaster(bus)
    clock = [100.0]
    monkeypatch.setattr(stores, "time", SimpleNamespace(monotonic=lambda: clock[0]))
    watcher = DummyWebSocket()
    await presence.join_chat(1, 20, watcher)

    await presence.set_typing(1, 10, True)
    clock[0] += 6
    await presence.set_typing(1, 10, False)

    assert watcher.sent[-1]["payload"] == {"userId": 10, "isTyping": False}
    assert await bus.expire_typing() == 0


@pytest.mark.anyio("asyncio")
async def test_removed_member_stops_receiving_room_events() -> None:
    bus = EventBus()
    presence = PresenceBroadcaster(bus)
    alice, carol_phone, carol_laptop = DummyWebSocket(), DummyWebSocket(), DummyWebSocket()
    await presence.join_chat(1, 10, alice)
    await presence.join_chat(1, 30, carol_phone)
    await presence.join_chat(1, 30, carol_laptop)
    await presence.set_typing(1, 30, True)

    assert await presence.remove_member(1, 30) == 2

    assert alice.types()[-2:] == ["typing-status", "user-offline"]
    assert alice.sent[-1]["payload"]["userId"] == 30
    assert await bus.presence.online(1) == [10]
    assert await bus.connections.rooms_of(carol_phone) == []

    await bus.publish_to_room(1, "new-message", {"content": "secret plan"})
    assert "new-message" not in carol_phone.types()
    assert "new-message" not in carol_laptop.types()
    assert alice.types()[-1] == "new-message"

    assert await presence.remove_member(1, 30) == 0


@pytest.mark.anyio("asyncio")
async def test_closed_room_forgets_sockets_and_state() -> None:
    bus = EventBus()
    presence = PresenceBroadcaster(bus)
    socket = DummyWebSocket()
    await presence.join_chat(4, 10, socket)
    await presence.set_typing(4, 10, True)

    await presence.close_room(4)

    assert await bus.connections.rooms_of(socket) == []
    assert await bus.presence.online(4) == []
    assert await bus.typing.snapshot(4) == []
    assert await bus.expire_typing() == 0
