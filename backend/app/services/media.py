"""Binds uploaded blobs to messages."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.storage import build_download_url, remove_stored, resolve_path, store_upload
from app.models import MediaType, Message, MessageMedia
from app.schemas.chat import MediaRead
from app.services.access import Publisher, get_room, get_room_message, require_membership
from app.services.serializers import serialize_media

logger = logging.getLogger(__name__)


class MediaAttachmentService:
    def __init__(self, db: Session, bus: Publisher) -> None:
        self.db = db
        self.bus = bus

    async def attach_media(
        self, room_id: int, message_id: int, uploader_id: int, upload: UploadFile
    ) -> MediaRead:
        get_room(self.db, room_id)
        require_membership(self.db, room_id, uploader_id)
        message = get_room_message(self.db, room_id, message_id)
        if message.is_deleted:
            raise ValidationError("Cannot attach media to a deleted message")

        stored = await store_upload(room_id, upload)
        media = MessageMedia(
            message_id=message_id,
            uploader_id=uploader_id,
            type=MediaType.from_mime(stored.content_type),
            url="",
            storage_path=stored.relative_path,
            file_name=stored.file_name,
            file_size=stored.file_size,
            mime_type=stored.content_type,
        )
        try:
            self.db.add(media)
            self.db.flush()
            media.url = build_download_url(room_id, media.id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            remove_stored(stored.relative_path)
            raise

        logger.info(
            "Stored %s attachment %s (%d bytes) for message %s",
            media.type.value,
            media.id,
            media.file_size,
            message_id,
        )
        payload = serialize_media(media, room_id)
        await self.bus.publish_to_room(room_id, "media-uploaded", payload.to_payload())
        return payload

    def open_media(self, room_id: int, media_id: int, user_id: int) -> tuple[Path, MessageMedia]:
        get_room(self.db, room_id)
        require_membership(self.db, room_id, user_id)
        stmt = (
            select(MessageMedia)
            .join(Message, Message.id == MessageMedia.message_id)
            .where(MessageMedia.id == media_id, Message.room_id == room_id)
        )
        media = self.db.execute(stmt).scalar_one_or_none()
        if media is None:
            raise NotFoundError("Media not found")
        return resolve_path(media.storage_path), media
