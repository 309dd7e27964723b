"""Engine and sessions for the attendance point store.

The daily expiration pass and the repair tools open their own sessions
from ``async_session_factory``; request handlers get theirs via ``get_db``.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from discipline.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development",
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
)

# Points read back after commit (summaries, notifications) must stay loaded
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for points, expiration runs, notifications and audit rows."""


async def get_db() -> AsyncSession:
    """One session per request; committed on success so excusals and resets persist."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
