"""Schemas for the notification inbox."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from app.models.enums import NotificationType
from app.schemas.chat import CamelModel


class NotificationRead(CamelModel):
    id: int
    type: NotificationType
    title: str
    body: str
    room_id: int | None = None
    message_id: int | None = None
    sender_id: int | None = None
    context: dict[str, Any] | None = None
    is_read: bool = False
    created_at: datetime
    read_at: datetime | None = None


class NotificationReadAll(CamelModel):
    updated: int
