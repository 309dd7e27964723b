"""Shared test fixtures — async DB, client, auth helpers, factories.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from discipline.auth.service import create_access_token
from discipline.common.constants import ExpirationKind, UserRole, ViolationType
from discipline.database import Base, get_db
from discipline.main import create_app
from discipline.points.models import AttendancePoint
from discipline.points.policy import compute_expires_at, planned_expiration_kind

# Import ALL model modules so create_all sees every table
import discipline.common.audit  # noqa: F401
import discipline.notifications.models  # noqa: F401
import discipline.points.models  # noqa: F401

# ── SQLite compat: compile PG-specific types to TEXT ────────────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() as a SQLite custom function for server defaults."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )


TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from discipline.common.rate_limit import limiter
    if hasattr(limiter, "_storage"):
        limiter._storage.reset()
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Auth helpers ────────────────────────────────────────────────────

def auth_headers(role: UserRole = UserRole.hr_admin, user_id: Optional[uuid.UUID] = None) -> dict:
    token = create_access_token(user_id or uuid.uuid4(), role)
    return {"Authorization": f"Bearer {token}"}


# ── Model factories ─────────────────────────────────────────────────

def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_point(
    user_id: uuid.UUID,
    shift_date: date,
    point_type: ViolationType = ViolationType.tardy,
    *,
    points: str = "0.25",
    is_advised: bool = False,
    eligible_for_gbro: bool = True,
    created_at: Optional[datetime] = None,
    **overrides,
) -> AttendancePoint:
    """Build an unsaved point with SRO fields derived the same way the service does."""
    fields = dict(
        id=uuid.uuid4(),
        user_id=user_id,
        shift_date=shift_date,
        point_type=point_type,
        points=Decimal(points),
        is_advised=is_advised,
        is_manual=False,
        eligible_for_gbro=eligible_for_gbro,
        is_excused=False,
        is_expired=False,
        expires_at=compute_expires_at(shift_date, point_type, is_advised),
        expiration_type=planned_expiration_kind(point_type, is_advised),
        created_at=created_at or datetime.combine(shift_date, datetime.min.time(), tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return AttendancePoint(**fields)


async def add_points(db: AsyncSession, *points: AttendancePoint) -> list[AttendancePoint]:
    db.add_all(points)
    await db.commit()
    return list(points)


def gbro_expired(point: AttendancePoint) -> bool:
    return point.is_expired and point.expiration_type == ExpirationKind.gbro
