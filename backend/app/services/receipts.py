"""Read receipts, delivery acknowledgements and unread counter upkeep."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import MessageDelivery, ReadReceipt, RoomMember
from app.schemas.chat import ConversationReadResult, ReadResult
from app.services.access import (
    Publisher,
    get_message,
    get_room,
    get_room_message,
    require_membership,
)
from app.services.rooms import unread_messages_query

logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    def __init__(self, db: Session, bus: Publisher) -> None:
        self.db = db
        self.bus = bus

    def _unread_count(self, room_id: int, user_id: int) -> int:
        stmt = select(RoomMember.unread_count).where(
            RoomMember.room_id == room_id, RoomMember.user_id == user_id
        )
        return int(self.db.execute(stmt).scalar_one_or_none() or 0)

    def _has_receipt(self, message_id: int, user_id: int) -> bool:
        stmt = select(ReadReceipt.id).where(
            ReadReceipt.message_id == message_id, ReadReceipt.user_id == user_id
        )
        return self.db.execute(stmt).first() is not None

    async def mark_as_read(self, message_id: int, reader_id: int) -> ReadResult:
        message = get_message(self.db, message_id)
        room_id = message.room_id
        get_room(self.db, room_id)
        require_membership(self.db, room_id, reader_id)

        def unchanged() -> ReadResult:
            return ReadResult(
                message_id=message_id,
                user_id=reader_id,
                created=False,
                unread_count=self._unread_count(room_id, reader_id),
            )

        # Deleted messages were already taken off every counter.
        if message.sender_id == reader_id or message.is_deleted:
            return unchanged()
        if self._has_receipt(message_id, reader_id):
            return unchanged()

        self.db.add(ReadReceipt(message_id=message_id, user_id=reader_id))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return unchanged()

        self.db.execute(
            update(RoomMember)
            .where(
                RoomMember.room_id == room_id,
                RoomMember.user_id == reader_id,
                RoomMember.unread_count > 0,
            )
            .values(unread_count=RoomMember.unread_count - 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        await self.bus.publish_to_room(
            room_id, "message-read", {"messageId": message_id, "userId": reader_id}
        )
        return ReadResult(
            message_id=message_id,
            user_id=reader_id,
            created=True,
            unread_count=self._unread_count(room_id, reader_id),
        )

    async def mark_conversation_read(self, room_id: int, reader_id: int) -> ConversationReadResult:
        get_room(self.db, room_id)
        require_membership(self.db, room_id, reader_id)

        pending = list(self.db.execute(unread_messages_query(room_id, reader_id)).scalars())
        newly_read: list[int] = []
        for message_id in sorted(pending):
            self.db.add(ReadReceipt(message_id=message_id, user_id=reader_id))
            try:
                self.db.commit()
            except IntegrityError:
                # Another request recorded this receipt first.
                self.db.rollback()
                continue
            newly_read.append(message_id)

        self.db.execute(
            update(RoomMember)
            .where(RoomMember.room_id == room_id, RoomMember.user_id == reader_id)
            .values(unread_count=0, last_seen_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        for message_id in newly_read:
            await self.bus.publish_to_room(
                room_id, "message-read", {"messageId": message_id, "userId": reader_id}
            )
        if newly_read:
            logger.debug("User %s read %d messages in room %s", reader_id, len(newly_read), room_id)
        return ConversationReadResult(room_id=room_id, message_ids=newly_read, unread_count=0)

    async def acknowledge_delivery(
        self,
        room_id: int,
        message_id: int,
        user_id: int,
        *,
        exclude: Iterable[Any] | None = None,
    ) -> dict[str, Any] | None:
        """Record that the user's client received the message; None when nothing changed."""

        get_room(self.db, room_id)
        require_membership(self.db, room_id, user_id)
        message = get_room_message(self.db, room_id, message_id)
        if message.sender_id == user_id:
            return None

        existing = self.db.execute(
            select(MessageDelivery.id).where(
                MessageDelivery.message_id == message_id, MessageDelivery.user_id == user_id
            )
        ).first()
        if existing is not None:
            return None

        delivery = MessageDelivery(message_id=message_id, user_id=user_id)
        self.db.add(delivery)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None

        payload = {
            "messageId": message_id,
            "userId": user_id,
            "deliveredAt": delivery.delivered_at.isoformat(),
        }
        await self.bus.publish_to_room(room_id, "message-delivered", payload, exclude=exclude)
        return payload
