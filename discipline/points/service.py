"""Point service layer — lifecycle operations and balance queries.

Business logic:
  - Violation recording with default value, GBRO eligibility and SRO date
  - Manual excusal and reset of expired points, both audited
  - As-of-time balances (leave adjudication reads these)
  - GBRO progress and high-balance reporting
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.common.audit import create_audit_entry
from discipline.common.constants import PointStatus, ViolationType
from discipline.common.exceptions import (
    InvalidPointStateError,
    NotFoundException,
    ValidationException,
)
from discipline.common.pagination import PaginationParams, paginate
from discipline.config import settings
from discipline.points.gbro import order_pending, reference_date, resolve_cohorts
from discipline.points.models import AttendancePoint
from discipline.points.policy import (
    compute_expires_at,
    default_gbro_eligibility,
    default_point_value,
    ensure_utc,
    gbro_window,
    planned_expiration_kind,
)
from discipline.points.schemas import (
    BalanceResponse,
    GbroStatusResponse,
    HighPointsEmployee,
    PointListResponse,
    PointOut,
)
from discipline.points.temporal import balance_breakdown, sum_active_as_of

logger = logging.getLogger(__name__)


def _snapshot(point: AttendancePoint) -> dict:
    """JSON-safe view of the mutable lifecycle fields for the audit trail."""

    def _iso(value):
        return value.isoformat() if value is not None else None

    return {
        "is_excused": point.is_excused,
        "excused_at": _iso(point.excused_at),
        "is_expired": point.is_expired,
        "expired_at": _iso(point.expired_at),
        "expiration_type": point.expiration_type.value,
        "expires_at": _iso(point.expires_at),
        "gbro_expires_at": _iso(point.gbro_expires_at),
        "gbro_applied_at": _iso(point.gbro_applied_at),
        "gbro_batch_id": point.gbro_batch_id,
    }


def clear_expiry(point: AttendancePoint) -> None:
    """Return an expired point to active with SRO re-derived from its origin."""
    point.is_expired = False
    point.expired_at = None
    point.expires_at = compute_expires_at(point.shift_date, point.point_type, point.is_advised)
    point.expiration_type = planned_expiration_kind(point.point_type, point.is_advised)
    point.gbro_expires_at = None
    point.gbro_applied_at = None
    point.gbro_batch_id = None


# ═════════════════════════════════════════════════════════════════════
# PointService
# ═════════════════════════════════════════════════════════════════════


class PointService:
    """Async point lifecycle operations."""

    # ── Create ──────────────────────────────────────────────────────

    @staticmethod
    async def create_point(
        db: AsyncSession,
        user_id: uuid.UUID,
        shift_date: date,
        violation_type: ViolationType,
        *,
        value: Optional[Decimal] = None,
        eligible_for_gbro: Optional[bool] = None,
        is_advised: bool = False,
        is_manual: bool = False,
        violation_details: Optional[str] = None,
        tardy_minutes: Optional[int] = None,
        undertime_minutes: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> AttendancePoint:
        """Record a violation.

        Value and GBRO eligibility default from the violation type; an NCNS
        is never GBRO-eligible by default and keeps its points for a year.
        """
        if value is None:
            value = default_point_value(violation_type)
        if value <= 0:
            raise ValidationException({"points": ["Point value must be greater than 0."]})
        if eligible_for_gbro is None:
            eligible_for_gbro = default_gbro_eligibility(violation_type, is_advised)

        point = AttendancePoint(
            user_id=user_id,
            shift_date=shift_date,
            point_type=violation_type,
            points=value,
            eligible_for_gbro=eligible_for_gbro,
            is_advised=is_advised,
            is_manual=is_manual,
            violation_details=violation_details,
            tardy_minutes=tardy_minutes,
            undertime_minutes=undertime_minutes,
            notes=notes,
            created_by=created_by,
            is_excused=False,
            is_expired=False,
            expires_at=compute_expires_at(shift_date, violation_type, is_advised),
            expiration_type=planned_expiration_kind(violation_type, is_advised),
        )
        db.add(point)
        await db.flush()

        await create_audit_entry(
            db,
            action="create",
            entity_type="attendance_point",
            entity_id=point.id,
            actor_id=created_by,
            new_values={
                "user_id": str(user_id),
                "shift_date": shift_date.isoformat(),
                "point_type": violation_type.value,
                "points": str(value),
                "eligible_for_gbro": eligible_for_gbro,
            },
        )
        logger.info(
            "Recorded %s point for user %s on %s (%s pts)",
            violation_type.value, user_id, shift_date, value,
        )
        return point

    # ── Read ────────────────────────────────────────────────────────

    @staticmethod
    async def get_point(db: AsyncSession, point_id: uuid.UUID) -> AttendancePoint:
        result = await db.execute(
            select(AttendancePoint).where(AttendancePoint.id == point_id)
        )
        point = result.scalars().first()
        if point is None:
            raise NotFoundException("AttendancePoint", point_id)
        return point

    @staticmethod
    async def list_points(
        db: AsyncSession,
        pagination: PaginationParams,
        *,
        user_id: Optional[uuid.UUID] = None,
        status: Optional[PointStatus] = None,
    ) -> PointListResponse:
        """Paginated points, newest violation first."""
        query = select(AttendancePoint).order_by(
            AttendancePoint.shift_date.desc(),
            AttendancePoint.created_at.desc(),
        )
        if user_id is not None:
            query = query.where(AttendancePoint.user_id == user_id)
        if status == PointStatus.active:
            query = query.where(
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.is_excused.is_(False),
            )
        elif status == PointStatus.excused:
            query = query.where(AttendancePoint.is_excused.is_(True))
        elif status == PointStatus.expired:
            query = query.where(
                AttendancePoint.is_expired.is_(True),
                AttendancePoint.is_excused.is_(False),
            )

        rows, meta = await paginate(db, query, pagination, model=AttendancePoint)
        return PointListResponse(
            data=[PointOut.model_validate(p) for p in rows],
            meta=meta,
        )

    @staticmethod
    async def user_points(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        on_or_before: Optional[date] = None,
    ) -> Sequence[AttendancePoint]:
        query = select(AttendancePoint).where(AttendancePoint.user_id == user_id)
        if on_or_before is not None:
            query = query.where(AttendancePoint.shift_date <= on_or_before)
        result = await db.execute(query)
        return result.scalars().all()

    # ── Excuse / reset ──────────────────────────────────────────────

    @staticmethod
    async def excuse_point(
        db: AsyncSession,
        point_id: uuid.UUID,
        now: datetime,
        *,
        excused_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> AttendancePoint:
        """Manually forgive an active point. Terminal: it never expires later."""
        point = await PointService.get_point(db, point_id)
        if point.is_excused:
            raise InvalidPointStateError("excuse", "Point has already been excused.")
        if point.is_expired:
            raise InvalidPointStateError(
                "excuse", "Point has already expired and cannot be excused.",
            )

        old_values = _snapshot(point)
        point.is_excused = True
        point.excused_at = now
        point.excused_by = excused_by
        point.excuse_reason = reason
        point.gbro_expires_at = None
        await db.flush()

        await create_audit_entry(
            db,
            action="excuse",
            entity_type="attendance_point",
            entity_id=point.id,
            actor_id=excused_by,
            old_values=old_values,
            new_values={**_snapshot(point), "excuse_reason": reason},
        )
        logger.info("Excused point %s for user %s", point.id, point.user_id)
        return point

    @staticmethod
    async def reset_point(
        db: AsyncSession,
        point_id: uuid.UUID,
        now: datetime,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> AttendancePoint:
        """Undo an expiration, re-deriving SRO from the violation itself."""
        point = await PointService.get_point(db, point_id)
        if point.is_excused:
            raise InvalidPointStateError("reset", "Excused points cannot be reset.")
        if not point.is_expired:
            raise InvalidPointStateError("reset", "Only expired points can be reset.")

        old_values = _snapshot(point)
        clear_expiry(point)
        await db.flush()

        await create_audit_entry(
            db,
            action="reset",
            entity_type="attendance_point",
            entity_id=point.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values={**_snapshot(point), "reset_at": now.isoformat()},
        )
        logger.info("Reset expired point %s for user %s", point.id, point.user_id)
        return point

    # ── Balances ────────────────────────────────────────────────────

    @staticmethod
    async def sum_active_as_of(
        db: AsyncSession,
        user_id: uuid.UUID,
        instant: datetime,
    ) -> Decimal:
        instant = ensure_utc(instant)
        points = await PointService.user_points(db, user_id, on_or_before=instant.date())
        return sum_active_as_of(points, instant)

    @staticmethod
    async def current_balance(
        db: AsyncSession,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Decimal:
        return await PointService.sum_active_as_of(
            db, user_id, now or datetime.now(timezone.utc)
        )

    @staticmethod
    async def balance(
        db: AsyncSession,
        user_id: uuid.UUID,
        instant: datetime,
    ) -> BalanceResponse:
        instant = ensure_utc(instant)
        points = await PointService.user_points(db, user_id, on_or_before=instant.date())
        total, count, by_type = balance_breakdown(points, instant)
        return BalanceResponse(
            user_id=user_id,
            as_of=instant,
            total_points=total,
            active_count=count,
            by_type=by_type,
        )

    # ── GBRO status ─────────────────────────────────────────────────

    @staticmethod
    async def gbro_status(
        db: AsyncSession,
        user_id: uuid.UUID,
        now: datetime,
    ) -> GbroStatusResponse:
        """How far the user is from their next Good Behavior Roll Off."""
        points = await PointService.user_points(db, user_id)
        pending = order_pending(points)
        if not pending:
            return GbroStatusResponse(user_id=user_id)

        applied = [ensure_utc(p.gbro_applied_at) for p in points if p.gbro_applied_at]
        last_applied_at = max(applied) if applied else None
        resolution = resolve_cohorts(
            points, now, last_applied_at=last_applied_at, expire=False,
        )
        next_date = resolution.scheduled_for
        if resolution.reanchored:
            reference = reference_date(pending, last_applied_at)
        else:
            reference = next_date - gbro_window()
        if last_applied_at is not None and last_applied_at.date() == reference:
            reference_type = "gbro"
        else:
            reference_type = "violation"

        today = ensure_utc(now).date()
        head = pending[:settings.GBRO_COHORT_SIZE]
        return GbroStatusResponse(
            user_id=user_id,
            reference_date=reference,
            reference_type=reference_type,
            days_clean=max(0, (today - reference).days),
            days_until_gbro=max(0, (next_date - today).days),
            next_gbro_date=next_date,
            eligible_points_count=len(pending),
            eligible_points_sum=sum((Decimal(p.points) for p in pending), Decimal("0")),
            next_cohort_sum=sum((Decimal(p.points) for p in head), Decimal("0")),
            is_gbro_ready=len(head) == settings.GBRO_COHORT_SIZE and next_date <= today,
        )

    # ── Reporting ───────────────────────────────────────────────────

    @staticmethod
    async def high_points_employees(
        db: AsyncSession,
        threshold: Optional[Decimal] = None,
    ) -> list[HighPointsEmployee]:
        """Users whose current active balance is at or above *threshold*."""
        if threshold is None:
            threshold = Decimal(str(settings.HIGH_POINTS_THRESHOLD))
        total = func.sum(AttendancePoint.points)
        result = await db.execute(
            select(
                AttendancePoint.user_id,
                total.label("total_points"),
                func.count(AttendancePoint.id).label("violations_count"),
            )
            .where(
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.is_excused.is_(False),
            )
            .group_by(AttendancePoint.user_id)
            .having(total >= threshold)
            .order_by(total.desc())
        )
        return [
            HighPointsEmployee(
                user_id=row.user_id,
                total_points=Decimal(str(row.total_points)),
                violations_count=row.violations_count,
            )
            for row in result.all()
        ]
