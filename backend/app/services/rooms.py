"""Room directory: direct and group rooms, listing and deletion."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.core.storage import remove_stored
from app.models import (
    Message,
    MessageDelivery,
    MessageMedia,
    MessageReaction,
    Notification,
    ReadReceipt,
    Room,
    RoomMember,
    User,
)
from app.schemas.chat import DirectRoomRead, RoomRead
from app.services.access import Publisher, get_room, get_user, require_membership
from app.services.serializers import (
    MESSAGE_LOAD_OPTIONS,
    ROOM_LOAD_OPTIONS,
    load_messages,
    serialize_messages,
    serialize_room,
)

logger = logging.getLogger(__name__)

settings = get_settings()


def normalize_pair(user_id: int, other_id: int) -> tuple[int, int]:
    return (user_id, other_id) if user_id < other_id else (other_id, user_id)


def unread_messages_query(room_id: int, user_id: int):
    """Messages in the room, not sent by the user and not yet read by them."""

    receipt_exists = exists().where(
        ReadReceipt.message_id == Message.id,
        ReadReceipt.user_id == user_id,
    )
    return select(Message.id).where(
        Message.room_id == room_id,
        or_(Message.sender_id.is_(None), Message.sender_id != user_id),
        Message.is_deleted.is_(False),
        ~receipt_exists,
    )


class RoomDirectory:
    def __init__(self, db: Session, bus: Publisher) -> None:
        self.db = db
        self.bus = bus

    def _find_direct_room(self, low_id: int, high_id: int) -> Room | None:
        stmt = (
            select(Room)
            .where(
                Room.is_group.is_(False),
                Room.direct_user_low_id == low_id,
                Room.direct_user_high_id == high_id,
            )
            .options(*ROOM_LOAD_OPTIONS)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _load_room(self, room_id: int) -> Room:
        stmt = select(Room).where(Room.id == room_id).options(*ROOM_LOAD_OPTIONS)
        return self.db.execute(stmt.execution_options(populate_existing=True)).scalar_one()

    def derived_unread_count(self, room_id: int, user_id: int) -> int:
        subquery = unread_messages_query(room_id, user_id).subquery()
        return int(self.db.execute(select(func.count()).select_from(subquery)).scalar_one())

    def _reconcile_unread(self, room: Room, user_id: int) -> int:
        derived = self.derived_unread_count(room.id, user_id)
        membership = next(member for member in room.members if member.user_id == user_id)
        if membership.unread_count != derived:
            logger.info(
                "Correcting unread counter for user %s in room %s: %s -> %s",
                user_id,
                room.id,
                membership.unread_count,
                derived,
            )
            membership.unread_count = derived
            self.db.commit()
        return derived

    def get_or_create_direct_room(self, current_user_id: int, target_user_id: int) -> DirectRoomRead:
        if current_user_id == target_user_id:
            raise ValidationError("Cannot start a conversation with yourself")
        get_user(self.db, target_user_id)

        low_id, high_id = normalize_pair(current_user_id, target_user_id)
        room = self._find_direct_room(low_id, high_id)
        created = False
        if room is None:
            room = Room(
                is_group=False,
                created_by_id=current_user_id,
                direct_user_low_id=low_id,
                direct_user_high_id=high_id,
                members=[RoomMember(user_id=low_id), RoomMember(user_id=high_id)],
            )
            self.db.add(room)
            try:
                self.db.commit()
                created = True
            except IntegrityError as exc:
                # The other side created it concurrently; the pair key kept it unique.
                self.db.rollback()
                room = self._find_direct_room(low_id, high_id)
                if room is None:
                    raise ConflictError("Direct room could not be created, retry the request") from exc
            room = self._load_room(room.id)

        if created:
            logger.info("Created direct room %s for users %s and %s", room.id, low_id, high_id)
            summary = serialize_room(room, viewer_id=current_user_id, unread_count=0)
            return DirectRoomRead(**summary.model_dump(), messages=[], created=True)

        if not room.is_active:
            room.is_active = True
            self.db.commit()
            room = self._load_room(room.id)

        unread = self._reconcile_unread(room, current_user_id)
        stmt = (
            select(Message)
            .where(Message.room_id == room.id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(settings.direct_room_preview_limit)
            .options(*MESSAGE_LOAD_OPTIONS)
        )
        recent = list(self.db.execute(stmt).scalars())
        summary = serialize_room(
            room,
            viewer_id=current_user_id,
            last_message=recent[0] if recent else None,
            unread_count=unread,
        )
        return DirectRoomRead(
            **summary.model_dump(),
            messages=serialize_messages(recent, viewer_id=current_user_id),
            created=False,
        )

    def create_group_room(self, current_user_id: int, name: str, member_ids: list[int]) -> RoomRead:
        title = (name or "").strip()
        if not title:
            raise ValidationError("Group name is required")

        others: list[int] = []
        for member_id in member_ids:
            if member_id != current_user_id and member_id not in others:
                others.append(member_id)
        if len(others) < 2:
            raise ValidationError("A group needs at least two other members")

        found = set(self.db.execute(select(User.id).where(User.id.in_(others))).scalars())
        missing = [member_id for member_id in others if member_id not in found]
        if missing:
            raise NotFoundError(f"Users not found: {', '.join(str(item) for item in missing)}")

        room = Room(
            is_group=True,
            name=title,
            created_by_id=current_user_id,
            members=[RoomMember(user_id=user_id) for user_id in [current_user_id, *others]],
        )
        self.db.add(room)
        self.db.commit()
        logger.info("User %s created group room %s with %d members", current_user_id, room.id, len(others) + 1)
        return serialize_room(self._load_room(room.id), viewer_id=current_user_id)

    def list_rooms_for_user(self, user_id: int) -> list[RoomRead]:
        stmt = (
            select(Room)
            .join(RoomMember, RoomMember.room_id == Room.id)
            .where(RoomMember.user_id == user_id, Room.is_active.is_(True))
            .order_by(func.coalesce(Room.last_message_at, Room.created_at).desc(), Room.id.desc())
            .options(*ROOM_LOAD_OPTIONS)
        )
        rooms = list(self.db.execute(stmt).scalars().unique())
        previews = load_messages(
            self.db, [room.last_message_id for room in rooms if room.last_message_id is not None]
        )
        return [
            serialize_room(
                room,
                viewer_id=user_id,
                last_message=previews.get(room.last_message_id) if room.last_message_id else None,
            )
            for room in rooms
        ]

    def get_room_detail(self, room_id: int, user_id: int) -> RoomRead:
        get_room(self.db, room_id)
        require_membership(self.db, room_id, user_id)
        room = self._load_room(room_id)
        # Opening a room repairs a counter that drifted between send and read.
        unread = self._reconcile_unread(room, user_id)
        previews = load_messages(self.db, [room.last_message_id] if room.last_message_id else [])
        return serialize_room(
            room,
            viewer_id=user_id,
            last_message=previews.get(room.last_message_id),
            unread_count=unread,
        )

    def _ensure_can_delete(self, room: Room, user_id: int) -> None:
        if not room.is_group:
            return
        if settings.group_delete_policy == "any-member":
            return
        if room.created_by_id is not None and room.created_by_id != user_id:
            raise ForbiddenError("Only the group creator can delete this room")

    async def delete_room(self, user_id: int, room_id: int) -> None:
        room = get_room(self.db, room_id)
        require_membership(self.db, room_id, user_id)
        self._ensure_can_delete(room, user_id)

        member_ids = list(
            self.db.execute(select(RoomMember.user_id).where(RoomMember.room_id == room_id)).scalars()
        )
        message_ids = select(Message.id).where(Message.room_id == room_id)
        blob_paths = list(
            self.db.execute(
                select(MessageMedia.storage_path).where(MessageMedia.message_id.in_(message_ids))
            ).scalars()
        )

        # Children first so the foreign keys never point at a missing row.
        for model in (MessageReaction, ReadReceipt, MessageDelivery, MessageMedia):
            self.db.execute(
                delete(model)
                .where(model.message_id.in_(message_ids))
                .execution_options(synchronize_session=False)
            )
        self.db.execute(
            update(Notification)
            .where(Notification.room_id == room_id)
            .values(room_id=None, message_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            delete(Message).where(Message.room_id == room_id).execution_options(synchronize_session=False)
        )
        self.db.execute(
            delete(RoomMember)
            .where(RoomMember.room_id == room_id)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(delete(Room).where(Room.id == room_id).execution_options(synchronize_session=False))
        self.db.commit()
        self.db.expunge_all()
        logger.info("User %s deleted room %s", user_id, room_id)

        for path in blob_paths:
            try:
                remove_stored(path)
            except OSError:
                logger.warning("Could not remove stored media %s", path, exc_info=True)

        for member_id in member_ids:
            await self.bus.publish_to_user(
                member_id, "room-deleted", {"roomId": room_id, "deletedBy": user_id}
            )

    def leave_room(self, user_id: int, room_id: int) -> None:
        room = get_room(self.db, room_id)
        membership = require_membership(self.db, room_id, user_id)
        if not room.is_group:
            raise ValidationError("Direct rooms cannot be left")

        self.db.delete(membership)
        self.db.flush()
        remaining = self.db.execute(
            select(func.count(RoomMember.id)).where(RoomMember.room_id == room_id)
        ).scalar_one()
        if room.created_by_id == user_id:
            # Without its creator the group falls back to any-member deletion.
            room.created_by_id = None
        if remaining == 0:
            room.is_active = False
        self.db.commit()
        logger.info("User %s left room %s (%d members remain)", user_id, room_id, remaining)

    def touch_membership(self, room_id: int, user_id: int) -> RoomMember:
        """Refresh the member's last-seen marker; used by REST typing updates."""

        get_room(self.db, room_id)
        membership = require_membership(self.db, room_id, user_id)
        membership.last_seen_at = datetime.now(timezone.utc)
        self.db.commit()
        return membership
