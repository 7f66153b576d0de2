"""Connection-scoped presence and typing signals for room channels."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi.websockets import WebSocket

from huddle.realtime import EventBus, build_event, safe_send_json

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Turns socket joins, leaves and typing frames into room events.

    Nothing here is persisted: presence lives in the bus's in-memory stores
    and lapses with the connection.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def _announce(self, room_id: int, user_id: int, online: bool, *, exclude=None) -> None:
        status = "online" if online else "offline"
        await self.bus.publish_to_room(
            room_id,
            f"user-{status}",
            {
                "userId": user_id,
                "status": status,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            exclude=exclude,
        )

    async def join_chat(self, room_id: int, user_id: int, websocket: WebSocket) -> None:
        await self.bus.connections.join_room(room_id, websocket, user_id)
        online, changed = await self.bus.presence.mark_online(room_id, user_id, websocket)
        if changed:
            await self._announce(room_id, user_id, True, exclude={websocket})
        snapshot = {"online": online, "typing": await self.bus.typing.snapshot(room_id)}
        await safe_send_json(websocket, build_event("room-presence", snapshot, room_id=room_id))

    async def leave_chat(self, room_id: int, user_id: int, websocket: WebSocket) -> None:
        if not await self.bus.connections.leave_room(room_id, websocket):
            return
        _, was_typing = await self.bus.typing.clear_user(room_id, user_id)
        if was_typing:
            await self._typing_event(room_id, user_id, False)
        _, changed = await self.bus.presence.mark_offline(room_id, user_id, websocket)
        if changed:
            await self._announce(room_id, user_id, False)

    async def remove_member(self, room_id: int, user_id: int) -> int:
        """Unsubscribe a former member's sockets; returns how many were removed."""

        sockets = await self.bus.connections.leave_user(room_id, user_id)
        _, was_typing = await self.bus.typing.clear_user(room_id, user_id)
        if was_typing:
            await self._typing_event(room_id, user_id, False)
        went_offline = False
        for websocket in sockets:
            _, changed = await self.bus.presence.mark_offline(room_id, user_id, websocket)
            went_offline = went_offline or changed
        if went_offline:
            await self._announce(room_id, user_id, False)
        if sockets:
            logger.info("Removed %d socket(s) of user %s from room %s", len(sockets), user_id, room_id)
        return len(sockets)

    async def close_room(self, room_id: int) -> None:
        await self.bus.forget_room(room_id)

    async def set_typing(self, room_id: int, user_id: int, is_typing: bool) -> None:
        _, changed = await self.bus.typing.set_status(room_id, user_id, is_typing)
        if changed:
            await self._typing_event(room_id, user_id, is_typing)

    async def _typing_event(self, room_id: int, user_id: int, is_typing: bool) -> None:
        await self.bus.publish_to_room(
            room_id,
            "typing-status",
            {"userId": user_id, "isTyping": is_typing},
            exclude_user=user_id,
        )

    async def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        for room_id in await self.bus.connections.rooms_of(websocket):
            await self.leave_chat(room_id, user_id, websocket)
        await self.bus.connections.detach_user(user_id, websocket)
        logger.debug("User %s disconnected from realtime bus", user_id)
