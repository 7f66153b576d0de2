"""WebSocket endpoint carrying the realtime event bus."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

import anyio
from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.database import get_db_session
from app.models import User
from app.services import PresenceBroadcaster, ReadReceiptTracker
from app.services.access import get_room, require_membership
from huddle.realtime import EventBus, get_event_bus, safe_send_json

router = APIRouter(tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return get_user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "detail": detail})


def _int_field(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _check_membership(room_id: int, user_id: int) -> None:
    with get_db_session() as db:
        get_room(db, room_id)
        require_membership(db, room_id, user_id)


class _FrameHandler:
    """Dispatch client frames for one authenticated socket."""

    def __init__(self, websocket: WebSocket, user: User, bus: EventBus) -> None:
        self.websocket = websocket
        self.user_id = user.id
        self.bus = bus
        self.presence = PresenceBroadcaster(bus)

    async def _joined_room(self, payload: dict[str, Any]) -> int | None:
        room_id = _int_field(payload, "roomId")
        if room_id is None:
            await _send_error(self.websocket, "roomId must be an integer")
            return None
        if room_id not in await self.bus.connections.rooms_of(self.websocket):
            await _send_error(self.websocket, "Join the chat before sending room events")
            return None
        try:
            _check_membership(room_id, self.user_id)
        except HTTPException:
            # Membership ended elsewhere; stop listening before reporting it.
            await self.presence.leave_chat(room_id, self.user_id, self.websocket)
            raise
        return room_id

    async def join_room(self, payload: dict[str, Any]) -> None:
        requested = payload.get("userId")
        if requested is not None and requested != self.user_id:
            await _send_error(self.websocket, "Cannot subscribe to another user's channel")
            return
        await self.bus.connections.attach_user(self.user_id, self.websocket)

    async def join_chat(self, payload: dict[str, Any]) -> None:
        room_id = _int_field(payload, "roomId")
        if room_id is None:
            await _send_error(self.websocket, "roomId must be an integer")
            return
        _check_membership(room_id, self.user_id)
        await self.presence.join_chat(room_id, self.user_id, self.websocket)

    async def leave_chat(self, payload: dict[str, Any]) -> None:
        room_id = _int_field(payload, "roomId")
        if room_id is None:
            await _send_error(self.websocket, "roomId must be an integer")
            return
        await self.presence.leave_chat(room_id, self.user_id, self.websocket)

    async def typing(self, payload: dict[str, Any], is_typing: bool) -> None:
        room_id = await self._joined_room(payload)
        if room_id is not None:
            await self.presence.set_typing(room_id, self.user_id, is_typing)

    async def message_delivered(self, payload: dict[str, Any]) -> None:
        room_id = _int_field(payload, "roomId")
        message_id = _int_field(payload, "messageId")
        if room_id is None or message_id is None:
            await _send_error(self.websocket, "roomId and messageId must be integers")
            return
        with get_db_session() as db:
            await ReadReceiptTracker(db, self.bus).acknowledge_delivery(
                room_id, message_id, self.user_id, exclude={self.websocket}
            )

    async def dispatch(self, payload: dict[str, Any]) -> None:
        frame_type = payload.get("type")
        if frame_type == "ping":
            await safe_send_json(self.websocket, {"type": "pong"})
        elif frame_type == "join-room":
            await self.join_room(payload)
        elif frame_type == "join-chat":
            await self.join_chat(payload)
        elif frame_type == "leave-chat":
            await self.leave_chat(payload)
        elif frame_type == "typing":
            await self.typing(payload, True)
        elif frame_type == "stop-typing":
            await self.typing(payload, False)
        elif frame_type == "message-delivered":
            await self.message_delivered(payload)
        elif frame_type == "pong":
            return
        else:
            await _send_error(self.websocket, "Unsupported payload type")


@router.websocket("/ws")
async def websocket_events(
    websocket: WebSocket,
    bus: EventBus = Depends(get_event_bus),
) -> None:
    """Room and personal event stream for the authenticated user."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    await websocket.accept()
    handler = _FrameHandler(websocket, user, bus)
    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format")
                continue
            if not isinstance(payload, dict):
                await _send_error(websocket, "Message payload must be a JSON object")
                continue

            try:
                await handler.dispatch(payload)
            except HTTPException as exc:
                await _send_error(websocket, str(exc.detail))
    except WebSocketDisconnect:
        pass
    finally:
        # The server cancels the handler once the peer is gone; cleanup must still finish.
        with anyio.CancelScope(shield=True):
            await handler.presence.disconnect(user.id, websocket)
