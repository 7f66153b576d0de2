"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.api import ws as ws_module
from app.core import storage
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, User
from huddle.realtime import EventBus, get_event_bus


class RecordingBus(EventBus):
    """Event bus that remembers every publish before delivering it."""

    def __init__(self) -> None:
        super().__init__(node_id="test-node")
        self.events: list[tuple[str, int, str, dict[str, Any]]] = []

    async def publish_to_room(
        self,
        room_id: int,
        event: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[Any] | None = None,
        exclude_user: int | None = None,
    ) -> dict[str, Any]:
        self.events.append(("room", room_id, event, payload))
        return await super().publish_to_room(
            room_id, event, payload, exclude=exclude, exclude_user=exclude_user
        )

    async def publish_to_user(
        self, user_id: int, event: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self.events.append(("user", user_id, event, payload))
        return await super().publish_to_user(user_id, event, payload)

    def of_type(self, event: str) -> list[tuple[str, int, str, dict[str, Any]]]:
        return [entry for entry in self.events if entry[2] == event]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture()
def media_root(tmp_path, monkeypatch) -> Path:
    root = tmp_path / "media"
    monkeypatch.setattr(storage.settings, "media_root", root)
    return root


@pytest.fixture()
def make_user(session_factory) -> Callable[..., int]:
    """Create a user row and return its id."""

    def factory(login: str, display_name: str | None = None) -> int:
        with session_factory() as session:
            user = User(login=login, display_name=display_name)
            session.add(user)
            session.commit()
            return user.id

    return factory


def auth_headers(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest.fixture()
def client(session_factory, bus, media_root, monkeypatch) -> Iterator[TestClient]:
    """Yield a TestClient with the database and event bus dependencies overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def override_db_session() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(ws_module, "get_db_session", override_db_session)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
