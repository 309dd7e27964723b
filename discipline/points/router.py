"""Points router — record, excuse, reset, balances, GBRO status, batch pass.

All endpoints require authentication. Employees may read their own balance
and GBRO status; everything else enforces a role.
"""


import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.auth.dependencies import (
    CurrentUser,
    get_current_user,
    require_permission,
    require_role,
)
from discipline.common.constants import PointStatus, UserRole
from discipline.common.exceptions import ForbiddenException
from discipline.common.pagination import PaginationParams
from discipline.common.rate_limit import limiter
from discipline.database import get_db
from discipline.points.expiration import ExpirationService
from discipline.points.maintenance import MaintenanceService
from discipline.points.schemas import (
    BalanceResponse,
    ExcuseRequest,
    ExpirationPassOptions,
    ExpirationPassSummary,
    GbroStatusResponse,
    HighPointsEmployee,
    ManagementStats,
    PointCreate,
    PointListResponse,
    PointOut,
)
from discipline.points.service import PointService

router = APIRouter(prefix="", tags=["points"])


def _ensure_self_or_manager(user: CurrentUser, user_id: uuid.UUID) -> None:
    if user.id != user_id and not user.has_role(UserRole.manager):
        raise ForbiddenException("You can only view your own attendance points.")


# ── POST / — record a violation ─────────────────────────────────────

@router.post("", response_model=PointOut, status_code=201)
async def create_point(
    body: PointCreate,
    user: CurrentUser = Depends(require_permission("points:create")),
    db: AsyncSession = Depends(get_db),
):
    """Record an attendance point. Value and GBRO eligibility default from the type."""
    return await PointService.create_point(
        db,
        body.user_id,
        body.shift_date,
        body.point_type,
        value=body.points,
        eligible_for_gbro=body.eligible_for_gbro,
        is_advised=body.is_advised,
        is_manual=body.is_manual,
        violation_details=body.violation_details,
        tardy_minutes=body.tardy_minutes,
        undertime_minutes=body.undertime_minutes,
        notes=body.notes,
        created_by=user.id,
    )


# ── GET / — list points ─────────────────────────────────────────────

@router.get("", response_model=PointListResponse)
async def list_points(
    user_id: Optional[uuid.UUID] = Query(None),
    status: Optional[PointStatus] = Query(None),
    pagination: PaginationParams = Depends(),
    user: CurrentUser = Depends(require_role(UserRole.manager)),
    db: AsyncSession = Depends(get_db),
):
    """List points, newest violation first, filtered by user and status."""
    return await PointService.list_points(db, pagination, user_id=user_id, status=status)


# ── GET /balance/{user_id} ──────────────────────────────────────────
# NOTE: static prefixes are registered before /{point_id}.

@router.get("/balance/{user_id}", response_model=BalanceResponse)
async def get_balance(
    user_id: uuid.UUID,
    as_of: Optional[datetime] = Query(None, description="Defaults to now"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Active point total as of an instant (used by leave adjudication)."""
    _ensure_self_or_manager(user, user_id)
    return await PointService.balance(db, user_id, as_of or datetime.now(timezone.utc))


# ── GET /gbro/{user_id} ─────────────────────────────────────────────

@router.get("/gbro/{user_id}", response_model=GbroStatusResponse)
async def get_gbro_status(
    user_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _ensure_self_or_manager(user, user_id)
    return await PointService.gbro_status(db, user_id, datetime.now(timezone.utc))


# ── GET /high-points ────────────────────────────────────────────────

@router.get("/high-points", response_model=list[HighPointsEmployee])
async def high_points(
    threshold: Optional[Decimal] = Query(None, gt=0),
    user: CurrentUser = Depends(require_role(UserRole.hr_admin)),
    db: AsyncSession = Depends(get_db),
):
    """Users whose active balance is at or above the threshold."""
    return await PointService.high_points_employees(db, threshold)


# ── POST /expirations/run — batch pass ──────────────────────────────

@router.post("/expirations/run", response_model=ExpirationPassSummary)
@limiter.limit("10/minute")
async def run_expirations(
    request: Request,
    body: ExpirationPassOptions,
    user: CurrentUser = Depends(require_permission("points:run_expirations")),
    db: AsyncSession = Depends(get_db),
):
    """Run the SRO + GBRO pass now. GBRO is skipped if it already ran today."""
    return await ExpirationService.run_expiration_pass(db, options=body)


# ── GET /maintenance/stats ──────────────────────────────────────────

@router.get("/maintenance/stats", response_model=ManagementStats)
async def maintenance_stats(
    user: CurrentUser = Depends(require_permission("points:maintenance_read")),
    db: AsyncSession = Depends(get_db),
):
    return await MaintenanceService.management_stats(db, datetime.now(timezone.utc))


# ── GET /{point_id} ─────────────────────────────────────────────────

@router.get("/{point_id}", response_model=PointOut)
async def get_point(
    point_id: uuid.UUID,
    user: CurrentUser = Depends(require_role(UserRole.manager)),
    db: AsyncSession = Depends(get_db),
):
    return await PointService.get_point(db, point_id)


# ── POST /{point_id}/excuse ─────────────────────────────────────────

@router.post("/{point_id}/excuse", response_model=PointOut)
async def excuse_point(
    point_id: uuid.UUID,
    body: ExcuseRequest,
    user: CurrentUser = Depends(require_permission("points:excuse")),
    db: AsyncSession = Depends(get_db),
):
    """Excuse an active point. Expired or already-excused points are rejected."""
    return await PointService.excuse_point(
        db, point_id, datetime.now(timezone.utc), excused_by=user.id, reason=body.reason,
    )


# ── POST /{point_id}/reset ──────────────────────────────────────────

@router.post("/{point_id}/reset", response_model=PointOut)
async def reset_point(
    point_id: uuid.UUID,
    user: CurrentUser = Depends(require_permission("points:reset")),
    db: AsyncSession = Depends(get_db),
):
    """Undo an expiration; SRO is recomputed from the shift date."""
    return await PointService.reset_point(
        db, point_id, datetime.now(timezone.utc), actor_id=user.id,
    )
