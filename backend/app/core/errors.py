"""Error taxonomy shared by the messaging services and the HTTP layer."""

from __future__ import annotations

from fastapi import HTTPException, status


class MessagingError(HTTPException):
    """Base class for errors raised before any state is mutated."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request could not be processed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class ValidationError(MessagingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class NotFoundError(MessagingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ForbiddenError(MessagingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Forbidden"


class ConflictError(MessagingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict"


INTERNAL_ERROR_DETAIL = "Internal server error"
