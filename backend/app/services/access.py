"""Lookups shared by the messaging services."""

from __future__ import annotations

from typing import Any, Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import ForbiddenError, NotFoundError
from app.models import Message, Room, RoomMember, User


class Publisher(Protocol):
    """What the services need from the realtime bus."""

    async def publish_to_room(
        self,
        room_id: int,
        event: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[Any] | None = None,
        exclude_user: int | None = None,
    ) -> Any: ...

    async def publish_to_user(self, user_id: int, event: str, payload: dict[str, Any]) -> Any: ...


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def get_room(db: Session, room_id: int) -> Room:
    """Return an active room or raise 404; soft-removed rooms are invisible."""

    room = db.get(Room, room_id)
    if room is None or not room.is_active:
        raise NotFoundError("Room not found")
    return room


def get_membership(db: Session, room_id: int, user_id: int) -> RoomMember | None:
    stmt = select(RoomMember).where(
        RoomMember.room_id == room_id,
        RoomMember.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def require_membership(db: Session, room_id: int, user_id: int) -> RoomMember:
    membership = get_membership(db, room_id, user_id)
    if membership is None:
        raise ForbiddenError("Not a room member")
    return membership


def get_message(db: Session, message_id: int) -> Message:
    message = db.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message not found")
    return message


def get_room_message(db: Session, room_id: int, message_id: int) -> Message:
    message = db.get(Message, message_id)
    if message is None or message.room_id != room_id:
        raise NotFoundError("Message not found")
    return message


def other_member_ids(db: Session, room_id: int, user_id: int | None) -> list[int]:
    stmt = select(RoomMember.user_id).where(RoomMember.room_id == room_id)
    if user_id is not None:
        stmt = stmt.where(RoomMember.user_id != user_id)
    return list(db.execute(stmt.order_by(RoomMember.user_id)).scalars())
