"""Realtime event bus: room and personal channels over WebSockets."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import (
    realtime_connections,
    realtime_events_total,
    realtime_relay_errors_total,
)

from .stores import PresenceStatusStore, TypingStatusStore
from .transport import EVENTS_TOPIC, RedisRelay, RelayUnavailableError, Subscription

logger = logging.getLogger(__name__)

ROOM_SCOPE = "room"
USER_SCOPE = "user"


def build_event(
    event: str, payload: dict[str, Any], *, room_id: int | None = None
) -> dict[str, Any]:
    """Wrap a payload in the envelope every server frame uses.

    Room events also carry ``roomId`` because one socket may sit in many rooms.
    """

    message: dict[str, Any] = {"type": event, "payload": payload}
    if room_id is not None:
        message["roomId"] = room_id
    message["timestamp"] = datetime.now(timezone.utc).isoformat()
    return message


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON, returning False instead of raising when the socket is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


class ConnectionRegistry:
    """Track which sockets listen on which room and personal channels."""

    def __init__(self) -> None:
        self._rooms: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._users: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._owners: Dict[WebSocket, int] = {}
        self._lock = asyncio.Lock()

    async def attach_user(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self._owners[websocket] = user_id
            sockets = self._users[user_id]
            if websocket not in sockets:
                sockets.add(websocket)
                realtime_connections.labels(USER_SCOPE).inc()

    async def detach_user(self, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self._owners.pop(websocket, None)
            sockets = self._users.get(user_id)
            if sockets and websocket in sockets:
                sockets.discard(websocket)
                realtime_connections.labels(USER_SCOPE).dec()
                if not sockets:
                    self._users.pop(user_id, None)

    async def join_room(
        self, room_id: int, websocket: WebSocket, user_id: int | None = None
    ) -> bool:
        async with self._lock:
            if user_id is not None:
                self._owners[websocket] = user_id
            sockets = self._rooms[room_id]
            if websocket in sockets:
                return False
            sockets.add(websocket)
            realtime_connections.labels(ROOM_SCOPE).inc()
            return True

    async def leave_room(self, room_id: int, websocket: WebSocket) -> bool:
        async with self._lock:
            sockets = self._rooms.get(room_id)
            if not sockets or websocket not in sockets:
                return False
            sockets.discard(websocket)
            realtime_connections.labels(ROOM_SCOPE).dec()
            if not sockets:
                self._rooms.pop(room_id, None)
            return True

    async def leave_user(self, room_id: int, user_id: int) -> list[WebSocket]:
        """Unsubscribe every socket the user owns from a room channel."""

        async with self._lock:
            sockets = self._rooms.get(room_id)
            if not sockets:
                return []
            removed = [socket for socket in sockets if self._owners.get(socket) == user_id]
            for socket in removed:
                sockets.discard(socket)
                realtime_connections.labels(ROOM_SCOPE).dec()
            if not sockets:
                self._rooms.pop(room_id, None)
            return removed

    async def drop_room(self, room_id: int) -> list[WebSocket]:
        async with self._lock:
            sockets = self._rooms.pop(room_id, set())
            for _ in sockets:
                realtime_connections.labels(ROOM_SCOPE).dec()
            return list(sockets)

    async def rooms_of(self, websocket: WebSocket) -> list[int]:
        async with self._lock:
            return sorted(room_id for room_id, sockets in self._rooms.items() if websocket in sockets)

    async def targets(
        self,
        scope: str,
        key: int,
        *,
        exclude: Iterable[WebSocket] | None = None,
        exclude_user: int | None = None,
    ) -> list[WebSocket]:
        async with self._lock:
            pool = self._rooms if scope == ROOM_SCOPE else self._users
            sockets = list(pool.get(key, ()))
            skipped = set(exclude or ())
            return [
                socket
                for socket in sockets
                if socket not in skipped
                and (exclude_user is None or self._owners.get(socket) != exclude_user)
            ]


class EventBus:
    """Publishes events to local sockets and, when configured, to peer nodes.

    Delivery is at-most-once: a socket that fails a send is skipped and
    nothing is queued for later.
    """

    def __init__(
        self,
        *,
        connections: ConnectionRegistry | None = None,
        relay: RedisRelay | None = None,
        node_id: str = "local",
        typing_ttl_seconds: float = 8.0,
    ) -> None:
        self.connections = connections or ConnectionRegistry()
        self.presence = PresenceStatusStore()
        self.typing = TypingStatusStore(typing_ttl_seconds)
        self._relay = relay
        self._node_id = node_id
        self._subscription: Subscription | None = None
        self._relay_warning_logged = False
        self._typing_sweeper: asyncio.Task[None] | None = None

    @property
    def node_id(self) -> str:
        return self._node_id

    async def publish_to_room(
        self,
        room_id: int,
        event: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[WebSocket] | None = None,
        exclude_user: int | None = None,
    ) -> dict[str, Any]:
        message = build_event(event, payload, room_id=room_id)
        await self._deliver(ROOM_SCOPE, room_id, message, exclude=exclude, exclude_user=exclude_user)
        await self._relay_out(ROOM_SCOPE, room_id, message, exclude_user)
        realtime_events_total.labels(ROOM_SCOPE, "out", event).inc()
        return message

    async def publish_to_user(
        self, user_id: int, event: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        message = build_event(event, payload)
        await self._deliver(USER_SCOPE, user_id, message)
        await self._relay_out(USER_SCOPE, user_id, message, None)
        realtime_events_total.labels(USER_SCOPE, "out", event).inc()
        return message

    async def _deliver(
        self,
        scope: str,
        key: int,
        message: dict[str, Any],
        *,
        exclude: Iterable[WebSocket] | None = None,
        exclude_user: int | None = None,
    ) -> int:
        sockets = await self.connections.targets(
            scope, key, exclude=exclude, exclude_user=exclude_user
        )
        delivered = 0
        for socket in sockets:
            if await safe_send_json(socket, message):
                delivered += 1
        return delivered

    async def _relay_out(
        self, scope: str, key: int, message: dict[str, Any], exclude_user: int | None
    ) -> None:
        if self._relay is None or not self._relay.configured:
            return
        envelope = {
            "origin": self._node_id,
            "scope": scope,
            "key": key,
            "exclude_user": exclude_user,
            "message": message,
        }
        try:
            await self._relay.publish(EVENTS_TOPIC, envelope)
        except RelayUnavailableError:
            if not self._relay_warning_logged:
                logger.warning(
                    "Realtime relay unavailable while publishing %s; delivering locally only",
                    message.get("type"),
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._relay_warning_logged = True
            realtime_relay_errors_total.labels(scope, "unavailable").inc()
        except Exception:
            realtime_relay_errors_total.labels(scope, "error").inc()
            logger.exception("Unexpected error while relaying %s", message.get("type"))
        else:
            self._relay_warning_logged = False

    async def handle_relayed(self, envelope: dict[str, Any]) -> None:
        """Deliver an event published by another node to local sockets."""

        if envelope.get("origin") == self._node_id:
            return
        scope = envelope.get("scope")
        message = envelope.get("message")
        if scope not in (ROOM_SCOPE, USER_SCOPE) or not isinstance(message, dict):
            return
        try:
            key = int(envelope["key"])
        except (KeyError, TypeError, ValueError):
            return
        exclude_user = envelope.get("exclude_user")
        await self._deliver(
            scope,
            key,
            message,
            exclude_user=exclude_user if isinstance(exclude_user, int) else None,
        )
        realtime_events_total.labels(scope, "in", str(message.get("type"))).inc()

    async def expire_typing(self) -> int:
        """Announce a stop for every typing indicator that lapsed on this node."""

        stopped = 0
        for room_id, user_ids in (await self.typing.sweep()).items():
            for user_id in user_ids:
                await self.publish_to_room(
                    room_id,
                    "typing-status",
                    {"userId": user_id, "isTyping": False},
                    exclude_user=user_id,
                )
                stopped += 1
        return stopped

    async def _sweep_typing(self) -> None:
        interval = max(self.typing.ttl / 2, 0.5)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_typing()
            except Exception:
                logger.exception("Typing sweep failed")

    async def forget_room(self, room_id: int) -> None:
        """Drop every local subscription and ephemeral state of a removed room."""

        await self.connections.drop_room(room_id)
        await self.presence.forget_room(room_id)
        await self.typing.forget_room(room_id)

    async def start(self) -> None:
        if self._typing_sweeper is None:
            self._typing_sweeper = asyncio.create_task(self._sweep_typing(), name="typing-sweeper")
        if self._relay is None or not self._relay.configured:
            return
        try:
            await self._relay.start()
            self._subscription = await self._relay.subscribe(EVENTS_TOPIC, self.handle_relayed)
        except RelayUnavailableError:
            logger.warning(
                "Realtime relay unavailable during startup; continuing without cross-node delivery",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None

    async def stop(self) -> None:
        if self._typing_sweeper is not None:
            self._typing_sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._typing_sweeper
            self._typing_sweeper = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        if self._relay is not None:
            await self._relay.stop()
