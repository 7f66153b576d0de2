"""One reaction per user per message, replaced in place."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.models import Message, MessageReaction
from app.schemas.chat import ReactionRead
from app.services.access import Publisher, get_message, get_room, require_membership
from app.services.serializers import serialize_user


class ReactionRegistry:
    def __init__(self, db: Session, bus: Publisher) -> None:
        self.db = db
        self.bus = bus

    def _reactable(self, message_id: int, user_id: int) -> Message:
        message = get_message(self.db, message_id)
        get_room(self.db, message.room_id)
        require_membership(self.db, message.room_id, user_id)
        if message.is_deleted:
            raise ValidationError("Cannot react to a deleted message")
        return message

    def _find(self, message_id: int, user_id: int) -> MessageReaction | None:
        stmt = select(MessageReaction).where(
            MessageReaction.message_id == message_id,
            MessageReaction.user_id == user_id,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    async def add_or_replace(self, message_id: int, user_id: int, emoji: str) -> ReactionRead:
        value = (emoji or "").strip()
        if not value:
            raise ValidationError("Emoji is required")
        message = self._reactable(message_id, user_id)

        reaction = self._find(message_id, user_id)
        if reaction is None:
            reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=value)
            self.db.add(reaction)
            try:
                self.db.commit()
            except IntegrityError:
                # A concurrent request inserted first; overwrite its emoji instead.
                self.db.rollback()
                reaction = self._find(message_id, user_id)
                if reaction is None:
                    raise
                reaction.emoji = value
                self.db.commit()
        else:
            reaction.emoji = value
            self.db.commit()

        await self.bus.publish_to_room(
            message.room_id,
            "reaction-added",
            {"messageId": message_id, "userId": user_id, "emoji": value},
        )
        return ReactionRead(
            message_id=message_id,
            user_id=user_id,
            emoji=reaction.emoji,
            created_at=reaction.created_at,
            user=serialize_user(reaction.user),
        )

    async def remove(self, message_id: int, user_id: int) -> bool:
        message = get_message(self.db, message_id)
        room_id = message.room_id
        get_room(self.db, room_id)
        require_membership(self.db, room_id, user_id)

        result = self.db.execute(
            delete(MessageReaction)
            .where(MessageReaction.message_id == message_id, MessageReaction.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if not result.rowcount:
            return False

        await self.bus.publish_to_room(
            room_id, "reaction-removed", {"messageId": message_id, "userId": user_id}
        )
        return True
