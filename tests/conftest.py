"""
Common test fixtures.

Provides a fakeredis backed RedisBackend, a SessionManager with a short
typing window, a recording stand-in for websocket senders, an app wired to
the fake backend and a helper that mints tokens like the auth service does.
"""
import fakeredis
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import app as app_module
from backend import RedisBackend
from constants import JWT_ALGORITHM, JWT_SECRET
from room_session import SessionManager

TYPING_EXPIRY = 0.05


class Recorder:
    """Collects the frames the broadcast router sends to one connection."""

    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)

    def events(self):
        return [frame["event"] for frame in self.frames]

    def of(self, event):
        return [frame["data"] for frame in self.frames if frame["event"] == event]

    def clear(self):
        self.frames.clear()


def make_token(user_id, username):
    return jwt.encode({"id": user_id, "username": username}, JWT_SECRET, algorithm=JWT_ALGORITHM)


@pytest.fixture
def backend():
    return RedisBackend(fakeredis.FakeRedis(decode_responses=True))


@pytest.fixture
def manager(backend):
    return SessionManager(backend, typing_expiry=TYPING_EXPIRY)


@pytest.fixture
def connect(manager):
    """Register a recording sender for a connection id and return it."""
    def _connect(connection_id):
        recorder = Recorder()
        manager.router.register(connection_id, recorder)
        return recorder
    return _connect


@pytest.fixture
def room(backend):
    backend.remember_user("u-alice", "alice")
    return backend.create_room("general", "Talk about anything", "u-alice")


@pytest.fixture
def client(backend):
    application = app_module.create_app(backend=backend, typing_expiry=TYPING_EXPIRY, require_auth=False)
    with TestClient(application) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(backend):
    def _headers(user_id="u-alice", username="alice"):
        return {"Authorization": f"Bearer {make_token(user_id, username)}"}
    return _headers
