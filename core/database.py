"""
Database engine and session management with SQLAlchemy async.

PostgreSQL (asyncpg) is the production target. SQLite (aiosqlite) is
accepted for tests and local dry runs; an in-memory SQLite database is
bound to a single shared connection so every session sees the same data.
"""

from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pooling suited to the backend."""
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            options["poolclass"] = StaticPool
        return create_async_engine(url, echo=echo, **options)

    # Sessions are short-lived (one per request or batch)
    return create_async_engine(url, echo=echo, poolclass=NullPool)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.ENVIRONMENT == "development")
async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session; closed when the caller is done with it."""
    async with async_session_maker() as session:
        yield session


async def create_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables registered on the declarative base."""
    from models import Base  # noqa: registers every model

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database tables ensured: {', '.join(sorted(Base.metadata.tables))}")


async def drop_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Drop every migration and search table."""
    from models import Base  # noqa: registers every model

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("Database tables dropped")
