"""HTTP endpoints addressing a single message: read receipts and reactions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from app.api.deps import get_current_user, get_reaction_registry, get_receipt_tracker
from app.models import User
from app.schemas import ReactionRead, ReactionRequest, ReadResult
from app.services import ReactionRegistry, ReadReceiptTracker

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/{message_id}/read", response_model=ReadResult)
async def mark_message_read(
    message_id: int,
    tracker: ReadReceiptTracker = Depends(get_receipt_tracker),
    current_user: User = Depends(get_current_user),
) -> ReadResult:
    """Record a read receipt; repeating the call is a harmless no-op."""

    return await tracker.mark_as_read(message_id, current_user.id)


@router.post("/{message_id}/reactions", response_model=ReactionRead)
async def add_reaction(
    message_id: int,
    payload: ReactionRequest,
    registry: ReactionRegistry = Depends(get_reaction_registry),
    current_user: User = Depends(get_current_user),
) -> ReactionRead:
    return await registry.add_or_replace(message_id, current_user.id, payload.emoji)


@router.delete("/{message_id}/reactions", status_code=status.HTTP_204_NO_CONTENT)
async def remove_reaction(
    message_id: int,
    registry: ReactionRegistry = Depends(get_reaction_registry),
    current_user: User = Depends(get_current_user),
) -> Response:
    await registry.remove(message_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
