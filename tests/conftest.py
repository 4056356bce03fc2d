# tests/conftest.py

import os

# Must be set before app.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from sqlmodel.ext.asyncio.session import AsyncSession  # noqa: E402

from app.cache.layer import CacheLayer  # noqa: E402
from app.cache.task_cache import TaskCache  # noqa: E402
from app.core.config import Settings  # noqa: E402
from app.models import Project, Tag, User  # noqa: E402
from app.notifications.dispatcher import NotificationDispatcher  # noqa: E402
from app.repositories.task_store import SQLModelTaskStore  # noqa: E402
from app.services.task_service import TaskService  # noqa: E402

from tests.fakes import FakeRedis, RecordingPool  # noqa: E402


@pytest_asyncio.fixture()
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_dsn="redis://fake:6379/0",
        cache_namespace="test:",
        l1_enabled=False,
    )


@pytest.fixture()
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache_layer(settings: Settings, redis: FakeRedis) -> CacheLayer:
    return CacheLayer(settings, redis=redis)


@pytest.fixture()
def task_cache(cache_layer: CacheLayer) -> TaskCache:
    return TaskCache(cache_layer, task_ttl=120, list_ttl=60)


@pytest.fixture()
def queue() -> RecordingPool:
    return RecordingPool()


@pytest.fixture()
def service(session, task_cache: TaskCache, queue: RecordingPool) -> TaskService:
    return TaskService(SQLModelTaskStore(session), task_cache, NotificationDispatcher(queue))


@pytest_asyncio.fixture()
async def seed(session) -> SimpleNamespace:
    """One project, two users and two tags."""
    project = Project(name="Apollo")
    other_project = Project(name="Gemini")
    alice = User(email="alice@example.com", name="Alice")
    bob = User(email="bob@example.com", name="Bob")
    urgent = Tag(label="urgent")
    backend = Tag(label="backend")
    session.add_all([project, other_project, alice, bob, urgent, backend])
    await session.commit()
    return SimpleNamespace(
        project=project,
        other_project=other_project,
        alice=alice,
        bob=bob,
        urgent=urgent,
        backend=backend,
    )
