"""Async engine, session factory and schema bootstrap for the Fixo store."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from fixo.app.config import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by every Fixo model."""
    pass


def _engine_options(database_url: str) -> dict:
    """Driver-specific engine kwargs.

    SQLite gets a long lock wait because share sockets write a location row
    every few seconds while request handlers and the sweeper also write.
    """
    if "sqlite" in database_url:
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


settings = get_settings()
is_sqlite = "sqlite" in settings.database_url

engine = create_async_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: yield an async database session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create missing tables. Schema changes beyond that need a migration."""
    # Registers every model with Base.metadata
    import fixo.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if is_sqlite:
            # Readers (viewer snapshots, booking lists) must not block location writes
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))


async def close_db():
    """Release pooled connections on shutdown."""
    await engine.dispose()
