from __future__ import annotations

import io

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from app.core.errors import ForbiddenError, NotFoundError, ValidationError
from app.models import MediaType
from app.services import MediaAttachmentService, MessageLedger, RoomDirectory


def _upload(data: bytes, filename: str, content_type: str) -> UploadFile:
    return UploadFile(
        file=io.BytesIO(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


@pytest.mark.parametrize(
    ("mime_type", "expected"),
    [
        ("image/png", MediaType.IMAGE),
        ("video/mp4", MediaType.VIDEO),
        ("audio/mpeg", MediaType.AUDIO),
        ("application/pdf", MediaType.FILE),
        (None, MediaType.FILE),
    ],
)
def test_media_type_follows_top_level_mime(mime_type, expected) -> None:
    assert MediaType.from_mime(mime_type) == expected


@pytest.fixture()
def room(db_session, bus, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    direct = RoomDirectory(db_session, bus).get_or_create_direct_room(alice, bob)
    return direct.id, alice, bob


@pytest.mark.anyio("asyncio")
async def test_attach_media_stores_blob_and_announces_it(db_session, bus, room, media_root) -> None:
    room_id, alice, bob = room
    message = await MessageLedger(db_session, bus).send_message(room_id, alice, "", with_media=True)
    service = MediaAttachmentService(db_session, bus)

    media = await service.attach_media(room_id, message.id, alice, _upload(b"\x89PNG", "cat.png", "image/png"))

    assert media.type == MediaType.IMAGE
    assert media.file_size == 4
    assert media.url == f"/api/rooms/{room_id}/media/{media.id}/download"
    [(_, key, _, payload)] = bus.of_type("media-uploaded")
    assert key == room_id
    assert payload["messageId"] == message.id

    path, stored = service.open_media(room_id, media.id, bob)
    assert path.read_bytes() == b"\x89PNG"
    assert path.is_relative_to(media_root.resolve())
    assert stored.file_name == "cat.png"


@pytest.mark.anyio("asyncio")
async def test_attach_media_rejects_disallowed_type_and_outsiders(
    db_session, bus, room, media_root, make_user
) -> None:
    room_id, alice, _ = room
    message = await MessageLedger(db_session, bus).send_message(room_id, alice, "see attached")
    service = MediaAttachmentService(db_session, bus)

    with pytest.raises(ValidationError):
        await service.attach_media(room_id, message.id, alice, _upload(b"#!", "run.sh", "text/x-shellscript"))
    with pytest.raises(ForbiddenError):
        await service.attach_media(
            room_id, message.id, make_user("mallory"), _upload(b"x", "a.png", "image/png")
        )
    with pytest.raises(NotFoundError):
        service.open_media(room_id, 12345, alice)


@pytest.mark.anyio("asyncio")
async def test_deleting_message_removes_its_media(db_session, bus, room, media_root) -> None:
    room_id, alice, bob = room
    ledger = MessageLedger(db_session, bus)
    message = await ledger.send_message(room_id, alice, "pic", with_media=True)
    service = MediaAttachmentService(db_session, bus)
    media = await service.attach_media(room_id, message.id, alice, _upload(b"GIF89a", "a.gif", "image/gif"))
    path, _ = service.open_media(room_id, media.id, bob)

    deleted = await ledger.delete_message(room_id, message.id, alice)

    assert deleted.media == []
    assert not path.exists()
    with pytest.raises(NotFoundError):
        service.open_media(room_id, media.id, bob)
