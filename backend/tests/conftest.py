import os
import tempfile

# must be set before tallyrooms.config is imported
_DB_DIR = tempfile.mkdtemp(prefix="tallyrooms-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/app.db")
os.environ.setdefault("SESSION_SECRET_KEY", "test-secret-key-long-enough-for-hs256-signing")

import pytest
from fastapi.testclient import TestClient

from tallyrooms.auth import create_session_token, new_session_id
from tallyrooms.channel import RoomChannels
from tallyrooms.db import init_db, make_engine, make_session_factory
from tallyrooms.identity import resolve_or_create_user


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    async def _make_user(name):
        async with session_factory() as session:
            return await resolve_or_create_user(session, new_session_id(), name)

    return _make_user


@pytest.fixture
def channels():
    return RoomChannels()


@pytest.fixture
def token_for():
    def _token_for(user):
        return create_session_token(user.session_id)

    return _token_for


@pytest.fixture
def client():
    from tallyrooms.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def new_session(client):
    """Create a user over HTTP and return its bearer token and profile."""

    def _new_session(name):
        resp = client.post("/session", json={"display_name": name})
        assert resp.status_code == 200
        client.cookies.clear()
        data = resp.json()
        return data["token"], data["user"]

    return _new_session
