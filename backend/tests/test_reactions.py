from __future__ import annotations

import pytest
from sqlalchemy import select

from app.core.errors import ForbiddenError, ValidationError
from app.models import MessageReaction
from app.services import MessageLedger, ReactionRegistry, RoomDirectory


@pytest.fixture()
def message(db_session, bus, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    room = RoomDirectory(db_session, bus).get_or_create_direct_room(alice, bob)
    return room.id, alice, bob


@pytest.mark.anyio("asyncio")
async def test_reaction_is_replaced_not_duplicated(db_session, bus, message) -> None:
    room_id, alice, bob = message
    sent = await MessageLedger(db_session, bus).send_message(room_id, alice, "lunch?")
    registry = ReactionRegistry(db_session, bus)

    await registry.add_or_replace(sent.id, bob, "👍")
    replaced = await registry.add_or_replace(sent.id, bob, "🎉")

    rows = db_session.execute(select(MessageReaction)).scalars().all()
    assert [(row.user_id, row.emoji) for row in rows] == [(bob, "🎉")]
    assert replaced.emoji == "🎉"
    assert [payload["emoji"] for _, _, _, payload in bus.of_type("reaction-added")] == ["👍", "🎉"]


@pytest.mark.anyio("asyncio")
async def test_remove_publishes_only_when_something_was_removed(db_session, bus, message) -> None:
    room_id, alice, bob = message
    sent = await MessageLedger(db_session, bus).send_message(room_id, alice, "lunch?")
    registry = ReactionRegistry(db_session, bus)
    await registry.add_or_replace(sent.id, bob, "👍")

    assert await registry.remove(sent.id, bob) is True
    assert await registry.remove(sent.id, bob) is False
    assert [payload for _, _, _, payload in bus.of_type("reaction-removed")] == [
        {"messageId": sent.id, "userId": bob}
    ]


@pytest.mark.anyio("asyncio")
async def test_reactions_are_rejected_on_deleted_messages_and_for_outsiders(
    db_session, bus, message, make_user
) -> None:
    room_id, alice, bob = message
    ledger = MessageLedger(db_session, bus)
    sent = await ledger.send_message(room_id, alice, "soon gone")
    registry = ReactionRegistry(db_session, bus)

    with pytest.raises(ValidationError):
        await registry.add_or_replace(sent.id, bob, "  ")
    with pytest.raises(ForbiddenError):
        await registry.add_or_replace(sent.id, make_user("mallory"), "👀")

    await ledger.delete_message(room_id, sent.id, alice)
    with pytest.raises(ValidationError):
        await registry.add_or_replace(sent.id, bob, "👍")
