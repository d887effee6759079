"""Pytest configuration and shared fixtures"""

import os

# Cheap bcrypt work factors; must be set before app.config is imported.
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SHARE_PASSWORD_BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.config import GiB
from app.database import get_db
from app.dependencies import get_storage
from app.main import app
from app.models import Base, User
from app.services.auth import create_access_token, hash_password
from app.services.file_storage import LocalObjectStorage
from app.services.job_worker import WorkerContext
from app.services.virus_scanner import SignatureRescanPolicy

TEST_PASSWORD = "Passw0rd!"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so several sessions see the same data"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "objects", signing_secret="test-secret")


async def make_user(db, email: str, storage_limit: int = 5 * GiB, storage_used: int = 0) -> User:
    user = User(
        name=email.split("@")[0].title(),
        email=email,
        password_hash=hash_password(TEST_PASSWORD, 4),
        storage_used=storage_used,
        storage_limit=storage_limit,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db):
    return await make_user(db, "alice@example.com")


@pytest_asyncio.fixture
async def other_user(db):
    return await make_user(db, "bob@example.com")


@pytest.fixture
def worker_ctx(session_factory, storage):
    return WorkerContext(
        session_factory=session_factory,
        storage=storage,
        rescan_policy=SignatureRescanPolicy(),
        poll_interval=0.01,
    )


def bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


@pytest.fixture
def auth_headers(user):
    return bearer(user)


@pytest_asyncio.fixture
async def client(session_factory, storage):
    """API client wired to the test database and storage; lifespan is not run"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
