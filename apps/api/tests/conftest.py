import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import Base, build_engine, get_db
from main import app
from models.user import User
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def use_mock_analysis(monkeypatch):
    """Never reach the real model from tests."""
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'metering.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def make_user(session_maker):
    async def _make_user(user_id: str, tier: str = "free") -> str:
        async with session_maker() as session:
            await session.execute(insert(User).values(id=user_id, subscription_tier=tier))
            await session.commit()
        return user_id

    return _make_user


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)


class BrokenSession:
    """Session stand-in whose store is unreachable."""

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database unavailable"))

    async def commit(self):
        raise OperationalError("COMMIT", {}, Exception("database unavailable"))

    async def rollback(self):
        return None

    def add(self, instance):
        return None


@pytest.fixture
def broken_session():
    return BrokenSession()
