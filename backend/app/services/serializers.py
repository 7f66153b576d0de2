"""ORM to schema conversion for rooms and messages."""

from __future__ import annotations

from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.models import DeliveryStatus, Message, MessageMedia, MessageReaction, Room, RoomMember, User
from app.schemas.chat import (
    MediaRead,
    MemberRead,
    MessageRead,
    ReactionRead,
    ReadReceiptRead,
    RoomRead,
    UserSummary,
)

MESSAGE_LOAD_OPTIONS = (
    selectinload(Message.sender),
    selectinload(Message.media),
    selectinload(Message.reactions).selectinload(MessageReaction.user),
    selectinload(Message.read_receipts),
    selectinload(Message.deliveries),
)

ROOM_LOAD_OPTIONS = (selectinload(Room.members).selectinload(RoomMember.user),)


def serialize_user(user: User | None) -> UserSummary | None:
    if user is None:
        return None
    return UserSummary(
        id=user.id,
        login=user.login,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


def serialize_media(media: MessageMedia, room_id: int | None = None) -> MediaRead:
    return MediaRead(
        id=media.id,
        message_id=media.message_id,
        room_id=room_id,
        type=media.type,
        url=media.url,
        file_name=media.file_name,
        file_size=media.file_size,
        mime_type=media.mime_type,
        uploader_id=media.uploader_id,
        created_at=media.created_at,
    )


def delivery_status(message: Message) -> DeliveryStatus:
    """Derive sent/delivered/read from the receipts other members hold."""

    if any(receipt.user_id != message.sender_id for receipt in message.read_receipts):
        return DeliveryStatus.READ
    if any(delivery.user_id != message.sender_id for delivery in message.deliveries):
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.SENT


def serialize_message(message: Message, *, viewer_id: int | None = None) -> MessageRead:
    status = None
    if viewer_id is not None and viewer_id == message.sender_id:
        status = delivery_status(message)

    receipts = [
        ReadReceiptRead(message_id=message.id, user_id=receipt.user_id, read_at=receipt.read_at)
        for receipt in message.read_receipts
    ]

    if message.is_deleted:
        return MessageRead(
            id=message.id,
            room_id=message.room_id,
            sender_id=message.sender_id,
            sender=serialize_user(message.sender),
            content="",
            created_at=message.created_at,
            is_deleted=True,
            deleted_by_id=message.deleted_by_id,
            deleted_at=message.deleted_at,
            read_receipts=receipts,
            status=status,
        )

    return MessageRead(
        id=message.id,
        room_id=message.room_id,
        sender_id=message.sender_id,
        sender=serialize_user(message.sender),
        content=message.content,
        created_at=message.created_at,
        media=[serialize_media(media, message.room_id) for media in message.media],
        reactions=[
            ReactionRead(
                message_id=message.id,
                user_id=reaction.user_id,
                emoji=reaction.emoji,
                created_at=reaction.created_at,
                user=serialize_user(reaction.user),
            )
            for reaction in message.reactions
        ],
        read_receipts=receipts,
        status=status,
    )


def load_messages(db: Session, message_ids: Iterable[int]) -> dict[int, Message]:
    ids = list(set(message_ids))
    if not ids:
        return {}
    stmt = select(Message).where(Message.id.in_(ids)).options(*MESSAGE_LOAD_OPTIONS)
    return {message.id: message for message in db.execute(stmt).scalars()}


def serialize_message_by_id(db: Session, message_id: int, *, viewer_id: int | None = None) -> MessageRead:
    # Fresh load so relationships reflect rows written by bulk statements.
    stmt = (
        select(Message)
        .where(Message.id == message_id)
        .options(*MESSAGE_LOAD_OPTIONS)
        .execution_options(populate_existing=True)
    )
    message = db.execute(stmt).scalar_one()
    return serialize_message(message, viewer_id=viewer_id)


def serialize_messages(
    messages: Sequence[Message], *, viewer_id: int | None = None
) -> list[MessageRead]:
    return [serialize_message(message, viewer_id=viewer_id) for message in messages]


def serialize_room(
    room: Room,
    *,
    viewer_id: int,
    last_message: Message | None = None,
    unread_count: int | None = None,
) -> RoomRead:
    members = [
        MemberRead(
            user_id=member.user_id,
            user=serialize_user(member.user),
            unread_count=member.unread_count,
            last_seen_at=member.last_seen_at,
            joined_at=member.joined_at,
        )
        for member in room.members
    ]
    if unread_count is None:
        unread_count = next(
            (member.unread_count for member in room.members if member.user_id == viewer_id), 0
        )
    return RoomRead(
        id=room.id,
        is_group=room.is_group,
        name=room.name,
        created_by_id=room.created_by_id,
        is_active=room.is_active,
        last_message_at=room.last_message_at,
        last_message_id=room.last_message_id,
        created_at=room.created_at,
        members=members,
        last_message=(
            serialize_message(last_message, viewer_id=viewer_id) if last_message is not None else None
        ),
        unread_count=unread_count,
    )
