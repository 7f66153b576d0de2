"""Blob storage for chat attachments on the local filesystem."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final
from uuid import uuid4

from fastapi import HTTPException, UploadFile, status

from app.config import get_settings
from app.core.errors import NotFoundError, ValidationError

settings = get_settings()

_CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MiB


@dataclass(slots=True)
class StoredFile:
    """Represents a file persisted by the storage backend."""

    file_name: str
    content_type: str
    file_size: int
    absolute_path: Path
    relative_path: str


def _media_root() -> Path:
    root = Path(settings.media_root)
    root.mkdir(parents=True, exist_ok=True)
    return root


def ensure_allowed_type(content_type: str | None) -> str:
    """Return the normalised MIME type or reject types outside the allowlist."""

    mime_type = (content_type or "application/octet-stream").split(";", 1)[0].strip().lower()
    allowed = {item.lower() for item in settings.media_allowed_types}
    if allowed and mime_type not in allowed:
        raise ValidationError(f"Unsupported file type: {mime_type}")
    return mime_type


async def store_upload(room_id: int, upload: UploadFile) -> StoredFile:
    """Persist an uploaded file and return its storage metadata."""

    content_type = ensure_allowed_type(upload.content_type)

    target_dir = _media_root() / f"room_{room_id}"
    target_dir.mkdir(parents=True, exist_ok=True)

    original_name = os.path.basename(upload.filename or "") or "upload.bin"
    extension = Path(original_name).suffix
    absolute_path = target_dir / f"{uuid4().hex}{extension}"

    total_size = 0
    try:
        with absolute_path.open("wb") as buffer:
            while True:
                chunk = await upload.read(_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > settings.max_upload_size:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail="Attachment exceeds allowed size",
                    )
                buffer.write(chunk)
    except HTTPException:
        if absolute_path.exists():
            absolute_path.unlink()
        raise
    finally:
        await upload.close()

    relative_path = os.path.relpath(absolute_path, _media_root())
    return StoredFile(
        file_name=original_name,
        content_type=content_type,
        file_size=total_size,
        absolute_path=absolute_path,
        relative_path=relative_path,
    )


def remove_stored(relative_path: str) -> None:
    """Delete a stored blob; missing files are ignored."""

    candidate = (_media_root() / relative_path).resolve()
    if not candidate.is_relative_to(_media_root().resolve()):
        return
    candidate.unlink(missing_ok=True)


def resolve_path(relative_path: str) -> Path:
    """Return an absolute path for a stored file relative path."""

    candidate = (_media_root() / relative_path).resolve()
    if not candidate.is_relative_to(_media_root().resolve()):
        raise ValidationError("Invalid file path")
    if not candidate.is_file():
        raise NotFoundError("File not found")
    return candidate


def build_download_url(room_id: int, media_id: int) -> str:
    """Construct a relative download URL for an attachment."""

    base = settings.media_base_url.rstrip("/")
    return f"{base}/{room_id}/media/{media_id}/download"
