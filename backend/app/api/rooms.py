"""HTTP endpoints for rooms and their message ledgers."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status
from fastapi.responses import FileResponse

from app.api.deps import (
    get_current_user,
    get_media_service,
    get_message_ledger,
    get_presence_broadcaster,
    get_receipt_tracker,
    get_room_directory,
)
from app.models import User
from app.schemas import (
    ConversationReadResult,
    DirectRoomCreate,
    DirectRoomRead,
    GroupRoomCreate,
    MediaRead,
    MessageCreate,
    MessageHistoryPage,
    MessageRead,
    RoomRead,
    TypingUpdate,
)
from app.services import (
    MediaAttachmentService,
    MessageLedger,
    PresenceBroadcaster,
    ReadReceiptTracker,
    RoomDirectory,
)

router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.get("", response_model=list[RoomRead])
def list_rooms(
    directory: RoomDirectory = Depends(get_room_directory),
    current_user: User = Depends(get_current_user),
) -> list[RoomRead]:
    """Active rooms of the current user, most recently active first."""

    return directory.list_rooms_for_user(current_user.id)


@router.post("", response_model=DirectRoomRead)
def open_direct_room(
    payload: DirectRoomCreate,
    response: Response,
    directory: RoomDirectory = Depends(get_room_directory),
    current_user: User = Depends(get_current_user),
) -> DirectRoomRead:
    """Return the direct room shared with the target user, creating it on first contact."""

    room = directory.get_or_create_direct_room(current_user.id, payload.target_user_id)
    response.status_code = status.HTTP_201_CREATED if room.created else status.HTTP_200_OK
    return room


@router.post("/group", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
def create_group_room(
    payload: GroupRoomCreate,
    directory: RoomDirectory = Depends(get_room_directory),
    current_user: User = Depends(get_current_user),
) -> RoomRead:
    return directory.create_group_room(current_user.id, payload.name, payload.member_ids)


@router.get("/{room_id}", response_model=RoomRead)
def get_room(
    room_id: int,
    directory: RoomDirectory = Depends(get_room_directory),
    current_user: User = Depends(get_current_user),
) -> RoomRead:
    return directory.get_room_detail(room_id, current_user.id)


@router.delete("/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_room(
    room_id: int,
    directory: RoomDirectory = Depends(get_room_directory),
    presence: PresenceBroadcaster = Depends(get_presence_broadcaster),
    current_user: User = Depends(get_current_user),
) -> Response:
    await directory.delete_room(current_user.id, room_id)
    await presence.close_room(room_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{room_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_room(
    room_id: int,
    directory: RoomDirectory = Depends(get_room_directory),
    presence: PresenceBroadcaster = Depends(get_presence_broadcaster),
    current_user: User = Depends(get_current_user),
) -> Response:
    """Drop the membership, then stop room traffic to the caller's live sockets."""

    directory.leave_room(current_user.id, room_id)
    await presence.remove_member(room_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{room_id}/typing", status_code=status.HTTP_204_NO_CONTENT)
async def update_typing(
    room_id: int,
    payload: TypingUpdate,
    directory: RoomDirectory = Depends(get_room_directory),
    presence: PresenceBroadcaster = Depends(get_presence_broadcaster),
    current_user: User = Depends(get_current_user),
) -> Response:
    directory.touch_membership(room_id, current_user.id)
    await presence.set_typing(room_id, current_user.id, payload.is_typing)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{room_id}/read", response_model=ConversationReadResult)
async def mark_room_read(
    room_id: int,
    tracker: ReadReceiptTracker = Depends(get_receipt_tracker),
    current_user: User = Depends(get_current_user),
) -> ConversationReadResult:
    return await tracker.mark_conversation_read(room_id, current_user.id)


@router.get("/{room_id}/messages", response_model=MessageHistoryPage)
def list_messages(
    room_id: int,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    before: datetime | None = Query(default=None),
    ledger: MessageLedger = Depends(get_message_ledger),
    current_user: User = Depends(get_current_user),
) -> MessageHistoryPage:
    """Page backwards through the room history; items are oldest first."""

    return ledger.list_messages(
        room_id, current_user.id, limit=limit, cursor=cursor, before=before
    )


@router.post(
    "/{room_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    room_id: int,
    payload: MessageCreate,
    ledger: MessageLedger = Depends(get_message_ledger),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    return await ledger.send_message(
        room_id, current_user.id, payload.content, with_media=payload.with_media
    )


@router.delete("/{room_id}/messages/{message_id}", response_model=MessageRead)
async def delete_message(
    room_id: int,
    message_id: int,
    ledger: MessageLedger = Depends(get_message_ledger),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    """Tombstone the message; it keeps its place in the history without content."""

    return await ledger.delete_message(room_id, message_id, current_user.id)


@router.post(
    "/{room_id}/messages/{message_id}/media",
    response_model=MediaRead,
    status_code=status.HTTP_201_CREATED,
)
async def upload_media(
    room_id: int,
    message_id: int,
    file: UploadFile = File(...),
    media_service: MediaAttachmentService = Depends(get_media_service),
    current_user: User = Depends(get_current_user),
) -> MediaRead:
    return await media_service.attach_media(room_id, message_id, current_user.id, file)


@router.get("/{room_id}/media/{media_id}/download")
def download_media(
    room_id: int,
    media_id: int,
    media_service: MediaAttachmentService = Depends(get_media_service),
    current_user: User = Depends(get_current_user),
) -> FileResponse:
    path, media = media_service.open_media(room_id, media_id, current_user.id)
    return FileResponse(path, media_type=media.mime_type, filename=media.file_name)
