from fastapi import APIRouter

from app.api.messages import router as messages_router
from app.api.notifications import router as notifications_router
from app.api.rooms import router as rooms_router

router = APIRouter()

router.include_router(rooms_router)
router.include_router(messages_router)
router.include_router(notifications_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Huddle API"}
