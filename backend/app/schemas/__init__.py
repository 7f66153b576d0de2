"""Pydantic schemas for API payloads."""

from .chat import (
    ConversationReadResult,
    DirectRoomCreate,
    DirectRoomRead,
    GroupRoomCreate,
    MediaRead,
    MemberRead,
    MessageCreate,
    MessageHistoryPage,
    MessageRead,
    ReactionRead,
    ReactionRequest,
    ReadReceiptRead,
    ReadResult,
    RoomRead,
    TypingUpdate,
    UserSummary,
)
from .notifications import NotificationRead, NotificationReadAll

__all__ = [
    "ConversationReadResult",
    "DirectRoomCreate",
    "DirectRoomRead",
    "GroupRoomCreate",
    "MediaRead",
    "MemberRead",
    "MessageCreate",
    "MessageHistoryPage",
    "MessageRead",
    "NotificationRead",
    "NotificationReadAll",
    "ReactionRead",
    "ReactionRequest",
    "ReadReceiptRead",
    "ReadResult",
    "RoomRead",
    "TypingUpdate",
    "UserSummary",
]
