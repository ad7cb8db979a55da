# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from itertools import count
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TASK_WORKER_ENABLED", "false")

from activity_exchange.db.session import Base, build_engine, get_db
from activity_exchange.main import app as fastapi_app
from activity_exchange.models import LocalActor, OutboxItem
from activity_exchange.models.outbox import OUTBOX_STATUS_PENDING
from activity_exchange.services.directory import FollowerDirectory

TEST_DB_URL = "sqlite://"
LOCAL_HOST = "local.example"
PUBLIC = "https://www.w3.org/ns/activitystreams#Public"

_ACTIVITY_COUNTER = count(1)


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = build_engine(TEST_DB_URL, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def client(app: FastAPI, override_session_dependency: None) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def local_actor(db_session: Session) -> LocalActor:
    """Create and return an active local actor with id 1."""
    actor = LocalActor(
        id=1,
        uri=f"https://{LOCAL_HOST}/users/alice",
        followers_uri=f"https://{LOCAL_HOST}/users/alice/followers",
    )
    db_session.add(actor)
    db_session.commit()
    return actor


@pytest.fixture()
def add_followers(db_session: Session) -> Callable[..., list[str]]:
    """Return a helper registering ``n`` followers with distinct inboxes."""

    def _add(actor_id: int, n: int, host: str = "remote") -> list[str]:
        directory = FollowerDirectory(db_session)
        inboxes = []
        for i in range(n):
            inbox = f"https://{host}{i}.example/inbox"
            directory.add(actor_id, f"https://{host}{i}.example/users/u{i}", inbox)
            inboxes.append(inbox)
        return inboxes

    return _add


def _make_activity(
    activity_type: str = "Create",
    *,
    actor: str = f"https://{LOCAL_HOST}/users/alice",
    to: list[str] | None = None,
    cc: list[str] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    n = next(_ACTIVITY_COUNTER)
    activity: dict[str, Any] = {
        "id": f"https://{LOCAL_HOST}/activities/{n}",
        "type": activity_type,
        "actor": actor,
        "to": [PUBLIC] if to is None else to,
        "cc": [] if cc is None else cc,
        "object": {
            "id": f"https://{LOCAL_HOST}/notes/{n}",
            "type": "Note",
            "content": "Hello, World!",
        },
    }
    activity.update(extra)
    return activity


@pytest.fixture()
def make_activity() -> Callable[..., dict[str, Any]]:
    """Return a factory for activity payloads with unique ids."""
    return _make_activity


@pytest.fixture()
def outbox_item(db_session: Session, local_actor: LocalActor) -> Callable[..., OutboxItem]:
    """Return a factory persisting pending outbox items for ``local_actor``."""

    def _create(activity: dict[str, Any] | None = None, actor_id: int | None = None) -> OutboxItem:
        activity = activity or _make_activity()
        item = OutboxItem(
            activity_type=activity["type"],
            actor_id=local_actor.id if actor_id is None else actor_id,
            activity=activity,
            status=OUTBOX_STATUS_PENDING,
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _create
