from __future__ import annotations

from enum import Enum


class MediaType(str, Enum):
    """Kind of blob bound to a message, decided once at ingestion."""

    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    FILE = "FILE"

    @classmethod
    def from_mime(cls, mime_type: str | None) -> "MediaType":
        """Classify a MIME string by its top-level token; unknown kinds are files."""

        top_level = (mime_type or "").split("/", 1)[0].strip().lower()
        return _MIME_TOP_LEVEL.get(top_level, cls.FILE)


_MIME_TOP_LEVEL: dict[str, MediaType] = {
    "image": MediaType.IMAGE,
    "video": MediaType.VIDEO,
    "audio": MediaType.AUDIO,
}


class NotificationType(str, Enum):
    """Reason a durable notification was created."""

    MESSAGE = "MESSAGE"
    MENTION = "MENTION"


class DeliveryStatus(str, Enum):
    """Display status of a message as seen by its sender."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
