from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import select

from app.core.errors import ForbiddenError, ValidationError
from app.models import DeliveryStatus, Message, MessageReaction, Notification, NotificationType
from app.services import (
    MessageLedger,
    NotificationFanout,
    ReactionRegistry,
    ReadReceiptTracker,
    RoomDirectory,
)
from app.services.access import get_membership
from app.services.messages import DELETED_MESSAGE_BODY, clamp_limit, decode_cursor


def _unread(db_session, room_id: int, user_id: int) -> int:
    db_session.expire_all()
    return get_membership(db_session, room_id, user_id).unread_count


@pytest.fixture()
def group(db_session, bus, make_user):
    alice = make_user("alice", "Alice")
    bob = make_user("bob")
    carol = make_user("carol")
    room = RoomDirectory(db_session, bus).create_group_room(alice, "Team", [bob, carol])
    return room.id, alice, bob, carol


def test_clamp_limit_applies_defaults_and_ceiling() -> None:
    assert clamp_limit(None) == 50
    assert clamp_limit(500) == 100
    assert clamp_limit(10) == 10


def test_decode_cursor_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        decode_cursor("not-a-cursor")


@pytest.mark.anyio("asyncio")
async def test_send_message_counts_unread_for_everyone_but_sender(db_session, bus, group) -> None:
    room_id, alice, bob, carol = group
    ledger = MessageLedger(db_session, bus)

    message = await ledger.send_message(room_id, alice, "  hello team  ")

    assert message.content == "hello team"
    assert message.status == DeliveryStatus.SENT
    assert _unread(db_session, room_id, alice) == 0
    assert _unread(db_session, room_id, bob) == 1
    assert _unread(db_session, room_id, carol) == 1

    [(scope, key, _, payload)] = bus.of_type("new-message")
    assert (scope, key) == ("room", room_id)
    assert payload["id"] == message.id
    assert payload["roomId"] == room_id
    assert payload["senderId"] == alice
    assert payload["status"] is None


@pytest.mark.anyio("asyncio")
async def test_send_message_validates_content_and_membership(db_session, bus, group, make_user) -> None:
    room_id, alice, _, _ = group
    outsider = make_user("outsider")
    ledger = MessageLedger(db_session, bus)

    with pytest.raises(ValidationError):
        await ledger.send_message(room_id, alice, "   ")
    with pytest.raises(ValidationError):
        await ledger.send_message(room_id, alice, "x" * 4001)
    with pytest.raises(ForbiddenError):
        await ledger.send_message(room_id, outsider, "let me in")
    assert bus.events == []

    media_only = await ledger.send_message(room_id, alice, "", with_media=True)
    assert media_only.content == ""


@pytest.mark.anyio("asyncio")
async def test_send_message_creates_notifications_with_mentions(db_session, bus, group) -> None:
    room_id, alice, bob, carol = group
    ledger = MessageLedger(db_session, bus)

    message = await ledger.send_message(room_id, alice, "ping @Bob about the release")

    rows = db_session.execute(select(Notification).order_by(Notification.user_id)).scalars().all()
    assert [row.user_id for row in rows] == [bob, carol]
    assert rows[0].type == NotificationType.MENTION
    assert rows[0].title == "Alice mentioned you"
    assert rows[1].type == NotificationType.MESSAGE
    assert rows[1].title == "New message from Alice"

    pushed = bus.of_type("notification")
    assert sorted(key for _, key, _, _ in pushed) == [bob, carol]
    assert all(payload["messageId"] == message.id for _, _, _, payload in pushed)
    assert all(payload["notificationId"] is not None for _, _, _, payload in pushed)


@pytest.mark.anyio("asyncio")
async def test_history_pages_backwards_oldest_first(db_session, bus, group) -> None:
    room_id, alice, bob, _ = group
    ledger = MessageLedger(db_session, bus)
    sent = [(await ledger.send_message(room_id, alice, f"message {index}")).id for index in range(5)]

    first = ledger.list_messages(room_id, bob, limit=2)
    assert [item.id for item in first.items] == sent[3:]
    assert first.has_more is True

    second = ledger.list_messages(room_id, bob, limit=2, cursor=first.next_cursor)
    assert [item.id for item in second.items] == sent[1:3]

    third = ledger.list_messages(room_id, bob, limit=2, cursor=second.next_cursor)
    assert [item.id for item in third.items] == sent[:1]
    assert third.has_more is False
    assert third.next_cursor is None


@pytest.mark.anyio("asyncio")
async def test_delete_leaves_tombstone_and_fixes_unread(db_session, bus, group) -> None:
    room_id, alice, bob, carol = group
    ledger = MessageLedger(db_session, bus)
    message = await ledger.send_message(room_id, alice, "oops")
    await ReadReceiptTracker(db_session, bus).mark_as_read(message.id, bob)
    await ReactionRegistry(db_session, bus).add_or_replace(message.id, carol, "👍")

    with pytest.raises(ForbiddenError):
        await ledger.delete_message(room_id, message.id, bob)

    deleted = await ledger.delete_message(room_id, message.id, alice)

    assert deleted.is_deleted is True
    assert deleted.content == ""
    assert deleted.reactions == []
    assert deleted.deleted_by_id == alice
    assert [receipt.user_id for receipt in deleted.read_receipts] == [bob]
    assert _unread(db_session, room_id, bob) == 0
    assert _unread(db_session, room_id, carol) == 0
    assert db_session.execute(select(MessageReaction)).scalars().all() == []
    assert bus.of_type("message-deleted")[-1][3] == {"messageId": message.id, "userId": alice}

    history = ledger.list_messages(room_id, carol)
    assert [(item.id, item.is_deleted) for item in history.items] == [(message.id, True)]

    again = await ledger.delete_message(room_id, message.id, alice)
    assert again.is_deleted is True
    assert len(bus.of_type("message-deleted")) == 1


def test_history_breaks_timestamp_ties_by_id(db_session, bus, group) -> None:
    room_id, alice, bob, carol = group
    earlier = datetime(2026, 1, 1, 12, 0, 0)
    same_instant = datetime(2026, 1, 1, 12, 0, 5)
    rows = [
        Message(room_id=room_id, sender_id=alice, content="first", created_at=earlier),
        Message(room_id=room_id, sender_id=bob, content="second", created_at=same_instant),
        Message(room_id=room_id, sender_id=carol, content="third", created_at=same_instant),
    ]
    for row in rows:
        db_session.add(row)
        db_session.flush()
    db_session.commit()
    first_id, second_id, third_id = (row.id for row in rows)
    ledger = MessageLedger(db_session, bus)

    full = ledger.list_messages(room_id, alice)
    assert [item.id for item in full.items] == [first_id, second_id, third_id]

    newest = ledger.list_messages(room_id, alice, limit=1)
    assert [item.id for item in newest.items] == [third_id]

    tied = ledger.list_messages(room_id, alice, limit=1, cursor=newest.next_cursor)
    assert [item.id for item in tied.items] == [second_id]
    assert tied.has_more is True

    oldest = ledger.list_messages(room_id, alice, limit=1, cursor=tied.next_cursor)
    assert [item.id for item in oldest.items] == [first_id]
    assert oldest.has_more is False


@pytest.mark.anyio("asyncio")
async def test_delete_scrubs_content_from_row_and_inbox(db_session, bus, group) -> None:
    room_id, alice, bob, _ = group
    ledger = MessageLedger(db_session, bus)
    message = await ledger.send_message(room_id, alice, "my password is hunter2")

    await ledger.delete_message(room_id, message.id, alice)

    db_session.expire_all()
    assert db_session.get(Message, message.id).content == ""
    inbox = NotificationFanout(db_session, bus).list_for_user(bob)
    assert [item.body for item in inbox] == [DELETED_MESSAGE_BODY]
    assert all("hunter2" not in item.body for item in inbox)
