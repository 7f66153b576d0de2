"""Database models package."""

from .base import Base
from .chat import (
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
from .enums import DeliveryStatus, MediaType, NotificationType

__all__ = [
    "Base",
    "User",
    "Room",
    "RoomMember",
    "Message",
    "MessageMedia",
    "MessageReaction",
    "ReadReceipt",
    "MessageDelivery",
    "Notification",
    "MediaType",
    "NotificationType",
    "DeliveryStatus",
]
