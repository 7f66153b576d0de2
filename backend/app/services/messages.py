"""Message ledger: history, sending and tombstone deletion."""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone

from sqlalchemy import and_, delete, exists, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.errors import ForbiddenError, ValidationError
from app.core.storage import remove_stored
from app.models import (
    Message,
    MessageMedia,
    MessageReaction,
    Notification,
    ReadReceipt,
    RoomMember,
    User,
)
from app.monitoring.metrics import messages_sent_total, side_effect_failures_total
from app.schemas.chat import MessageHistoryPage, MessageRead
from app.services.access import (
    Publisher,
    get_room,
    get_room_message,
    other_member_ids,
    require_membership,
)
from app.services.notifications import NotificationFanout
from app.services.serializers import (
    MESSAGE_LOAD_OPTIONS,
    serialize_message_by_id,
    serialize_messages,
)

logger = logging.getLogger(__name__)

settings = get_settings()

DELETED_MESSAGE_BODY = "This message was deleted"


def encode_cursor(message: Message) -> str:
    payload = f"v1|{message.created_at.isoformat()}|{message.id}"
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        version, timestamp, message_id = raw.split("|", 2)
        if version != "v1":
            raise ValueError("Unsupported cursor version")
        return datetime.fromisoformat(timestamp), int(message_id)
    except (ValueError, UnicodeError) as exc:
        raise ValidationError("Invalid cursor") from exc


def clamp_limit(limit: int | None) -> int:
    value = limit or settings.chat_history_default_limit
    return max(1, min(value, settings.chat_history_max_limit))


class MessageLedger:
    def __init__(
        self,
        db: Session,
        bus: Publisher,
        notifications: NotificationFanout | None = None,
    ) -> None:
        self.db = db
        self.bus = bus
        self.notifications = notifications or NotificationFanout(db, bus)

    def list_messages(
        self,
        room_id: int,
        user_id: int,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        before: datetime | None = None,
    ) -> MessageHistoryPage:
        get_room(self.db, room_id)
        require_membership(self.db, room_id, user_id)
        page_size = clamp_limit(limit)

        stmt = select(Message).where(Message.room_id == room_id)
        if cursor:
            pivot_time, pivot_id = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    Message.created_at < pivot_time,
                    and_(Message.created_at == pivot_time, Message.id < pivot_id),
                )
            )
        elif before is not None:
            stmt = stmt.where(Message.created_at < before)

        stmt = (
            stmt.order_by(Message.created_at.desc(), Message.id.desc())
            .limit(page_size + 1)
            .options(*MESSAGE_LOAD_OPTIONS)
        )
        rows = list(self.db.execute(stmt).scalars())
        has_more = len(rows) > page_size
        if has_more:
            rows = rows[:page_size]
        rows.reverse()
        return MessageHistoryPage(
            items=serialize_messages(rows, viewer_id=user_id),
            next_cursor=encode_cursor(rows[0]) if has_more and rows else None,
            has_more=has_more,
        )

    async def send_message(
        self,
        room_id: int,
        sender_id: int,
        content: str | None,
        *,
        with_media: bool = False,
    ) -> MessageRead:
        room = get_room(self.db, room_id)
        require_membership(self.db, room_id, sender_id)

        text = (content or "").strip()
        if not text and not with_media:
            raise ValidationError("Message content cannot be empty")
        if len(text) > settings.chat_message_max_length:
            raise ValidationError(
                f"Message exceeds maximum length of {settings.chat_message_max_length} characters"
            )

        message = Message(room_id=room_id, sender_id=sender_id, content=text)
        self.db.add(message)
        self.db.flush()
        room.last_message_at = message.created_at
        room.last_message_id = message.id
        self.db.commit()
        message_id = message.id
        is_group = room.is_group
        messages_sent_total.labels("group" if is_group else "direct").inc()

        recipients = other_member_ids(self.db, room_id, sender_id)
        self._increment_unread(room_id, sender_id)

        serialized = serialize_message_by_id(self.db, message_id)
        await self.bus.publish_to_room(room_id, "new-message", serialized.to_payload())

        if recipients:
            await self.notifications.notify_new_message(
                room_id=room_id,
                message=serialized,
                sender=self.db.get(User, sender_id),
                recipient_ids=recipients,
            )

        return serialize_message_by_id(self.db, message_id, viewer_id=sender_id)

    def _increment_unread(self, room_id: int, sender_id: int) -> None:
        """Bump every other member's counter in one statement; failures are logged only."""

        try:
            self.db.execute(
                update(RoomMember)
                .where(RoomMember.room_id == room_id, RoomMember.user_id != sender_id)
                .values(unread_count=RoomMember.unread_count + 1)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            side_effect_failures_total.labels("unread_increment").inc()
            logger.exception("Failed to increment unread counters for room %s", room_id)

    async def delete_message(self, room_id: int, message_id: int, requester_id: int) -> MessageRead:
        get_room(self.db, room_id)
        require_membership(self.db, room_id, requester_id)
        message = get_room_message(self.db, room_id, message_id)
        if message.sender_id != requester_id:
            raise ForbiddenError("Only the sender can delete this message")
        if message.is_deleted:
            return serialize_message_by_id(self.db, message_id, viewer_id=requester_id)

        receipt_exists = exists().where(
            ReadReceipt.message_id == message_id,
            ReadReceipt.user_id == RoomMember.user_id,
        ).correlate(RoomMember)
        self.db.execute(
            update(RoomMember)
            .where(
                RoomMember.room_id == room_id,
                RoomMember.user_id != requester_id,
                RoomMember.unread_count > 0,
                ~receipt_exists,
            )
            .values(unread_count=RoomMember.unread_count - 1)
            .execution_options(synchronize_session=False)
        )

        blob_paths = list(
            self.db.execute(
                select(MessageMedia.storage_path).where(MessageMedia.message_id == message_id)
            ).scalars()
        )
        for model in (MessageReaction, MessageMedia):
            self.db.execute(
                delete(model)
                .where(model.message_id == message_id)
                .execution_options(synchronize_session=False)
            )

        self.db.execute(
            update(Notification)
            .where(Notification.message_id == message_id)
            .values(body=DELETED_MESSAGE_BODY)
            .execution_options(synchronize_session=False)
        )

        message.content = ""
        message.is_deleted = True
        message.deleted_by_id = requester_id
        message.deleted_at = datetime.now(timezone.utc)
        self.db.commit()
        logger.info("User %s deleted message %s in room %s", requester_id, message_id, room_id)

        for path in blob_paths:
            try:
                remove_stored(path)
            except OSError:
                logger.warning("Could not remove stored media %s", path, exc_info=True)

        await self.bus.publish_to_room(
            room_id, "message-deleted", {"messageId": message_id, "userId": requester_id}
        )
        return serialize_message_by_id(self.db, message_id, viewer_id=requester_id)
