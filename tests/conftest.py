"""Shared test fixtures for the newsroom API tests."""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="newsroom-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DB_DIR, "test.db")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LOCK_TTL_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient

import models
from auth import create_access_token, get_password_hash
from database import Base, SessionLocal, engine
from locks import LockCoordinator, LockRegistry
from main import app


class FakeSocket:
    """Stands in for a WebSocket: records what the server sends."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def types(self):
        return [m["type"] for m in self.sent]


@pytest.fixture
def db_session():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    yield db
    db.close()


@pytest.fixture
def coordinator():
    """Isolated lock coordinator installed on the app."""
    coord = LockCoordinator(LockRegistry())
    app.state.coordinator = coord
    return coord


@pytest.fixture
def users(db_session):
    """Two admins and a reader."""
    people = {
        "alice": models.User(email="alice@example.com", name="Alice", role="admin", password_hash=get_password_hash("alice-pw")),
        "bob": models.User(email="bob@example.com", name="Bob", role="admin", password_hash=get_password_hash("bob-pw")),
        "carol": models.User(email="carol@example.com", name="Carol", role="user", password_hash=get_password_hash("carol-pw")),
    }
    db_session.add_all(people.values())
    db_session.commit()
    for user in people.values():
        db_session.refresh(user)
    return people


@pytest.fixture
def tokens(users):
    return {key: create_access_token(user) for key, user in users.items()}


@pytest.fixture
def headers(tokens):
    return {key: {"Authorization": f"Bearer {tok}"} for key, tok in tokens.items()}


@pytest.fixture
def client(db_session, coordinator, users):
    # the context manager keeps every websocket on one event loop
    with TestClient(app) as c:
        yield c


@pytest.fixture
def article(db_session, users):
    a = models.Article(
        title="Budget vote",
        summary="Parliament votes on the budget",
        content="Full text",
        category="politics",
        status="published",
        author_id=users["alice"].id,
    )
    db_session.add(a)
    db_session.commit()
    db_session.refresh(a)
    return a
