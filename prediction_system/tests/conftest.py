"""
Shared fixtures: a throwaway SQLite file per test, a recording event
adapter, and an HTTP client wired to the test database.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from prediction_system.database import build_engine, build_session_factory, get_db
from prediction_system.orm.base import Base
from prediction_system.orm.user import User
from prediction_system.rate_limit import limiter
from prediction_system.rbac.auth import create_access_token
from prediction_system.realtime.broadcast_adapter import BroadcastAdapter
from prediction_system.realtime.events import EventNotifier, set_notifier
from prediction_system.services.channel_registry import get_or_create_channel
from prediction_system.services.identity_service import get_or_create_user


class RecordingAdapter(BroadcastAdapter):
    """Keeps every published event in order."""

    def __init__(self):
        self.published = []

    async def publish(self, topic, message):
        self.validate_message(message)
        self.published.append((topic, message))

    async def subscribe(self, topic):
        for published_topic, message in list(self.published):
            if published_topic == topic:
                yield message

    async def close(self):
        self.published.clear()

    @property
    def types(self):
        return [message["type"] for _, message in self.published]


@pytest.fixture(autouse=True)
def disable_rate_limits():
    previous = limiter.enabled
    limiter.enabled = False
    yield
    limiter.enabled = previous


@pytest.fixture(autouse=True)
def recorder():
    adapter = RecordingAdapter()
    set_notifier(EventNotifier(adapter))
    yield adapter
    set_notifier(None)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'predictions.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def owner(db) -> User:
    """Owner principal of channel 'test' (max score 13)."""
    channel = await get_or_create_channel(db, "test")
    return channel.owner


@pytest_asyncio.fixture
async def alice(db) -> User:
    return await get_or_create_user(db, "alice")


@pytest_asyncio.fixture
async def bob(db) -> User:
    return await get_or_create_user(db, "bob")


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    from prediction_system.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def headers_for(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user)}"}
    return headers_for
