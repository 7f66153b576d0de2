"""Durable notifications created when messages are sent, plus the inbox queries."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.errors import NotFoundError
from app.models import Notification, NotificationType, User
from app.monitoring.metrics import side_effect_failures_total
from app.schemas.chat import MessageRead
from app.schemas.notifications import NotificationRead
from app.services.access import Publisher

logger = logging.getLogger(__name__)

settings = get_settings()

MENTION_PATTERN = re.compile(r"(?<![\w@])@([A-Za-z0-9_.\-]+)")


def extract_mentions(content: str) -> set[str]:
    """Lower-cased logins referenced as ``@login`` in the text."""

    return {match.rstrip(".").lower() for match in MENTION_PATTERN.findall(content or "")}


class NotificationFanout:
    def __init__(self, db: Session, bus: Publisher) -> None:
        self.db = db
        self.bus = bus

    def _build(
        self,
        *,
        recipient: User,
        sender: User | None,
        room_id: int,
        message: MessageRead,
        mentions: set[str],
    ) -> Notification:
        sender_name = sender.name if sender is not None else "Unknown user"
        mentioned = recipient.login.lower() in mentions
        return Notification(
            user_id=recipient.id,
            type=NotificationType.MENTION if mentioned else NotificationType.MESSAGE,
            title=(
                f"{sender_name} mentioned you" if mentioned else f"New message from {sender_name}"
            ),
            body=message.content[: settings.notification_preview_length],
            room_id=room_id,
            message_id=message.id,
            sender_id=sender.id if sender is not None else None,
            context={
                "roomId": room_id,
                "messageId": message.id,
                "senderId": sender.id if sender is not None else None,
                "senderName": sender_name,
            },
        )

    async def notify_new_message(
        self,
        *,
        room_id: int,
        message: MessageRead,
        sender: User | None,
        recipient_ids: list[int],
    ) -> list[Notification]:
        """Persist one notification per recipient and push each to its owner.

        Persistence is best-effort: on a store failure the live pushes still go
        out without a notification id.
        """

        mentions = extract_mentions(message.content)
        recipients = list(
            self.db.execute(select(User).where(User.id.in_(recipient_ids)).order_by(User.id)).scalars()
        )
        records = [
            self._build(
                recipient=recipient,
                sender=sender,
                room_id=room_id,
                message=message,
                mentions=mentions,
            )
            for recipient in recipients
        ]
        try:
            self.db.add_all(records)
            self.db.commit()
            saved = True
        except SQLAlchemyError:
            self.db.rollback()
            saved = False
            side_effect_failures_total.labels("notification").inc()
            logger.exception("Failed to store notifications for message %s", message.id)

        message_payload = message.to_payload()
        for record in records:
            await self.bus.publish_to_user(
                record.user_id,
                "notification",
                {
                    "type": record.type.value,
                    "notificationId": record.id if saved else None,
                    "title": record.title,
                    "body": record.body,
                    "roomId": room_id,
                    "messageId": message.id,
                    "message": message_payload,
                },
            )
        return records if saved else []

    def list_for_user(
        self, user_id: int, *, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRead]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return [NotificationRead.model_validate(row) for row in self.db.execute(stmt).scalars()]

    def mark_read(self, notification_id: int, user_id: int) -> NotificationRead:
        notification = self.db.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification not found")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            self.db.commit()
        return NotificationRead.model_validate(notification)

    def mark_all_read(self, user_id: int) -> int:
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0
