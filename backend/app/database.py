"""Async SQLAlchemy engine and session factory.

Request handlers get a session through get_db; the job worker opens its own
sessions from async_session, since a rescan outlives the upload request
that queued it.
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings


def engine_options(url: str) -> dict:
    """Pool sizing for server databases; SQLite gets driver defaults."""
    if make_url(url).get_backend_name() == "sqlite":
        return {"echo": False}
    return {
        "echo": False,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency that yields an async DB session.

    Work left uncommitted by a failed request is rolled back.
    """
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
