"""Notification inbox endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user, get_notification_fanout
from app.models import User
from app.schemas import NotificationRead, NotificationReadAll
from app.services import NotificationFanout

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    fanout: NotificationFanout = Depends(get_notification_fanout),
    current_user: User = Depends(get_current_user),
) -> list[NotificationRead]:
    return fanout.list_for_user(current_user.id, unread_only=unread_only, limit=limit)


@router.post("/read-all", response_model=NotificationReadAll)
def mark_all_notifications_read(
    fanout: NotificationFanout = Depends(get_notification_fanout),
    current_user: User = Depends(get_current_user),
) -> NotificationReadAll:
    return NotificationReadAll(updated=fanout.mark_all_read(current_user.id))


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    fanout: NotificationFanout = Depends(get_notification_fanout),
    current_user: User = Depends(get_current_user),
) -> NotificationRead:
    return fanout.mark_read(notification_id, current_user.id)
