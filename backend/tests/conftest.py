"""Pytest configuration.

Settings are environment-based; set minimal test defaults here before
importing the package. Each test gets its own SQLite database file unless
TEST_DATABASE_URL points at a real server.
"""

import os


os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SECRET_KEY", "dev-test-secret")
os.environ.setdefault("APP_BASE_URL", "https://app.example.test")
os.environ.setdefault("NOTIFICATION_DELIVERY_MODE", "log")
os.environ.setdefault("OBJECT_STORE_BACKEND", "local")

from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

import socialvault.models  # noqa: F401  (register mappers)
from socialvault.core.config import settings
from socialvault.core.database import build_engine, build_session_factory
from socialvault.models.base import Base
from socialvault.services.object_store import LocalObjectStore


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine with a fresh schema."""
    url = settings.TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = build_engine(url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def object_store(tmp_path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects", secret_key="dev-test-secret")


@pytest.fixture
def user_id() -> str:
    return str(uuid4())
