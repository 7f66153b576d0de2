"""Messaging services; each takes a database session and the event bus."""

from .media import MediaAttachmentService
from .messages import MessageLedger
from .notifications import NotificationFanout
from .presence import PresenceBroadcaster
from .reactions import ReactionRegistry
from .receipts import ReadReceiptTracker
from .rooms import RoomDirectory

__all__ = [
    "MediaAttachmentService",
    "MessageLedger",
    "NotificationFanout",
    "PresenceBroadcaster",
    "ReactionRegistry",
    "ReadReceiptTracker",
    "RoomDirectory",
]
