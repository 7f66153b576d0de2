"""Schemas for rooms, messages and their realtime payloads."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.enums import DeliveryStatus, MediaType


class CamelModel(BaseModel):
    """Serialised with camelCase keys; request bodies accept either spelling."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class UserSummary(CamelModel):
    id: int
    login: str
    display_name: str | None = None
    avatar_url: str | None = None


class MediaRead(CamelModel):
    id: int
    message_id: int
    room_id: int | None = None
    type: MediaType
    url: str
    file_name: str
    file_size: int
    mime_type: str
    uploader_id: int | None = None
    created_at: datetime


class ReactionRead(CamelModel):
    message_id: int
    user_id: int
    emoji: str
    created_at: datetime
    user: UserSummary | None = None


class ReadReceiptRead(CamelModel):
    message_id: int
    user_id: int
    read_at: datetime


class MessageRead(CamelModel):
    """A ledger entry as shown to room members.

    Deleted messages keep their place in the history but expose no content.
    ``status`` is only filled in for the sender's own messages.
    """

    id: int
    room_id: int
    sender_id: int | None
    sender: UserSummary | None = None
    content: str
    created_at: datetime
    is_deleted: bool = False
    deleted_by_id: int | None = None
    deleted_at: datetime | None = None
    media: list[MediaRead] = Field(default_factory=list)
    reactions: list[ReactionRead] = Field(default_factory=list)
    read_receipts: list[ReadReceiptRead] = Field(default_factory=list)
    status: DeliveryStatus | None = None


class MessageHistoryPage(CamelModel):
    """Oldest-first page; ``next_cursor`` walks further back in time."""

    items: list[MessageRead]
    next_cursor: str | None = None
    has_more: bool = False


class MemberRead(CamelModel):
    user_id: int
    user: UserSummary | None = None
    unread_count: int = 0
    last_seen_at: datetime | None = None
    joined_at: datetime | None = None


class RoomRead(CamelModel):
    id: int
    is_group: bool
    name: str | None = None
    created_by_id: int | None = None
    is_active: bool = True
    last_message_at: datetime | None = None
    last_message_id: int | None = None
    created_at: datetime
    members: list[MemberRead] = Field(default_factory=list)
    last_message: MessageRead | None = None
    unread_count: int = 0


class DirectRoomRead(RoomRead):
    """Direct room with its most recent messages, newest first."""

    messages: list[MessageRead] = Field(default_factory=list)
    created: bool = False


class DirectRoomCreate(CamelModel):
    target_user_id: int


class GroupRoomCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=128)
    member_ids: list[int] = Field(default_factory=list)


class MessageCreate(CamelModel):
    content: str = ""
    with_media: bool = False


class ReactionRequest(CamelModel):
    emoji: str = Field(..., min_length=1, max_length=32)


class TypingUpdate(CamelModel):
    is_typing: bool


class ReadResult(CamelModel):
    message_id: int
    user_id: int
    created: bool
    unread_count: int


class ConversationReadResult(CamelModel):
    room_id: int
    message_ids: list[int] = Field(default_factory=list)
    unread_count: int = 0
