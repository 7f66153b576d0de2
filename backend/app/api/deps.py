"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.database import get_db
from app.models import User
from app.services import (
    MediaAttachmentService,
    MessageLedger,
    NotificationFanout,
    PresenceBroadcaster,
    ReactionRegistry,
    ReadReceiptTracker,
    RoomDirectory,
)
from huddle.realtime import EventBus, get_event_bus

# Tokens are issued by the identity service; this URL only documents the flow.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    return get_user_from_token(token, db)


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    payload = decode_access_token(token)
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return user


def get_room_directory(
    db: Session = Depends(get_db), bus: EventBus = Depends(get_event_bus)
) -> RoomDirectory:
    return RoomDirectory(db, bus)


def get_message_ledger(
    db: Session = Depends(get_db), bus: EventBus = Depends(get_event_bus)
) -> MessageLedger:
    return MessageLedger(db, bus)


def get_receipt_tracker(
    db: Session = Depends(get_db), bus: EventBus = Depends(get_event_bus)
) -> ReadReceiptTracker:
    return ReadReceiptTracker(db, bus)


def get_reaction_registry(
    db: Session = Depends(get_db), bus: EventBus = Depends(get_event_bus)
) -> ReactionRegistry:
    return ReactionRegistry(db, bus)


def get_media_service(
    db: Session = Depends(get_db), bus: EventBus = Depends(get_event_bus)
) -> MediaAttachmentService:
    return MediaAttachmentService(db, bus)


def get_notification_fanout(
    db: Session = Depends(get_db), bus: EventBus = Depends(get_event_bus)
) -> NotificationFanout:
    return NotificationFanout(db, bus)


def get_presence_broadcaster(bus: EventBus = Depends(get_event_bus)) -> PresenceBroadcaster:
    return PresenceBroadcaster(bus)
