"""Shared fixtures: file-backed SQLite database, in-memory Redis, fake schedule."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crowdbus.config import Settings
from crowdbus.core.broadcaster import Broadcaster
from crowdbus.core.cache import Cache
from crowdbus.core.tracker import TrackingService
from crowdbus.models import tables  # noqa: F401
from crowdbus.models.base import Base

from tests.factories import FakeScheduleGate, MockRedis


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis():
    return MockRedis()


@pytest.fixture
def cache(redis):
    return Cache(redis)


@pytest.fixture
def broadcaster(redis):
    return Broadcaster(redis)


@pytest.fixture
def schedule_gate():
    return FakeScheduleGate()


@pytest.fixture
def tracker(session_factory, cache, broadcaster, schedule_gate, settings):
    return TrackingService(session_factory, cache, broadcaster, schedule_gate, settings)
