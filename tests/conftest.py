"""
Test infrastructure for the content API.

Strategy
--------
- SQLite in-memory via aiosqlite removes the need for a running Postgres
  instance; StaticPool makes every session share the one connection an
  in-memory database lives on.
- A fresh application is built per test with ``create_app`` so each test
  owns its cache store and storage root.  The default store is a
  ``TaggedMemoryStore``; a test module can override the ``cache_store``
  fixture to run against a plain store instead.
- The store clock is a ``FakeClock`` so TTL expiry is driven explicitly.
- Tables are created before each test and dropped after it.
"""
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.cache import TaggedMemoryStore
from app.database import Base, get_db
from app.main import create_app
from app.models import User
from app.storage import LocalStorage

# ---------------------------------------------------------------------------
# Test database engine — SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class FakeClock:
    """Monotonic clock stand-in; advance it to expire cache entries."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_store(clock):
    return TaggedMemoryStore(clock=clock)


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(tmp_path / "public", "/storage")


@pytest.fixture
def app(cache_store, storage):
    application = create_app(cache_store=cache_store, storage=storage)
    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """
    Yield a live AsyncSession for tests that call services directly or
    seed rows the API has no endpoint for (users).
    """
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def async_client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create_user(name: str = "Ada Writer", email: str = "ada@example.com") -> int:
    """Insert a user in its own committed session and return its id."""
    async with async_session_test() as session:
        user = User(name=name, email=email)
        session.add(user)
        await session.commit()
        return user.id


@pytest_asyncio.fixture
async def author_id() -> int:
    return await _create_user()


@pytest.fixture
def make_user():
    """Factory fixture: ``await make_user(name, email)`` returns a new user id."""
    return _create_user
