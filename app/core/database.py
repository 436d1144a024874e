from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from app.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    """Pool options per dialect. SQLite (local dev, tests) keeps driver defaults."""
    if not url.startswith("postgresql"):
        return {}
    return {
        "pool_size": 10,
        "max_overflow": 20,  # total max = 30 connections
        "pool_pre_ping": True,  # Detects stale connections before use
        "pool_recycle": 300,
        "pool_timeout": 30,
        "connect_args": {
            "command_timeout": 60,  # Query timeout in seconds (prevents hung queries)
        },
    }


engine = create_async_engine(
    settings.database_url,
    echo=False,
    future=True,
    **_engine_options(settings.database_url),
)

async_session_maker = sessionmaker(  # type: ignore[call-overload]
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields an async database session.

    Commits on success, rolls back if the request raised.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create all tables (for development only)."""
    import app.models  # noqa: F401  registers every table on SQLModel.metadata

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
