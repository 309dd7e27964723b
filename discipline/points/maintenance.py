"""Maintenance service — repair and recompute tools for the point table.

Every tool accepts ``dry_run`` and returns a ``MaintenanceResult`` listing
what it changed (or would change). Derived columns are always rebuilt from a
point's origin fields (``shift_date``, ``point_type``, ``is_advised``) and
GBRO dates always come from ``resolve_cohorts``, the same function the daily
pass uses.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.common.audit import create_audit_entry
from discipline.common.constants import ExpirationKind
from discipline.config import settings
from discipline.points.expiration import new_batch_id
from discipline.points.gbro import (
    apply_assignments,
    apply_gbro,
    is_gbro_pending,
    order_pending,
    reference_date,
    resolve_cohorts,
)
from discipline.points.models import AttendancePoint
from discipline.points.policy import (
    compute_expires_at,
    ensure_utc,
    gbro_window,
    planned_expiration_kind,
    start_of_day,
)
from discipline.points.schemas import MaintenanceResult, ManagementStats
from discipline.points.service import PointService, clear_expiry
from discipline.points.sro import apply_sro, sro_due

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _last_applied(points: Iterable[AttendancePoint]) -> Optional[datetime]:
    applied = [ensure_utc(p.gbro_applied_at) for p in points if p.gbro_applied_at]
    return max(applied) if applied else None


async def _pending_user_ids(db: AsyncSession) -> list[uuid.UUID]:
    result = await db.execute(
        select(AttendancePoint.user_id)
        .where(
            AttendancePoint.eligible_for_gbro.is_(True),
            AttendancePoint.is_expired.is_(False),
            AttendancePoint.is_excused.is_(False),
            AttendancePoint.gbro_applied_at.is_(None),
        )
        .distinct()
    )
    return sorted(result.scalars().all(), key=str)


async def _locked_user_points(db: AsyncSession, user_id: uuid.UUID) -> Sequence[AttendancePoint]:
    result = await db.execute(
        select(AttendancePoint)
        .where(AttendancePoint.user_id == user_id)
        .with_for_update()
    )
    return result.scalars().all()


# ═════════════════════════════════════════════════════════════════════
# MaintenanceService
# ═════════════════════════════════════════════════════════════════════


class MaintenanceService:
    """Operator repair tools. The caller commits."""

    # ── GBRO dates ──────────────────────────────────────────────────

    @staticmethod
    async def initialize_gbro_dates(
        db: AsyncSession,
        now: datetime,
        *,
        dry_run: bool = False,
    ) -> MaintenanceResult:
        """Date every user's pending cohort without expiring anything.

        Only cohort 0 is stored; the details also carry the projected
        schedule of the later cohorts (each one window after the previous).
        """
        result = MaintenanceResult(action="initialize-gbro-dates", dry_run=dry_run)
        for user_id in await _pending_user_ids(db):
            async with db.begin_nested():
                points = await _locked_user_points(db, user_id)
                resolution = resolve_cohorts(
                    points, now, last_applied_at=_last_applied(points), expire=False,
                )
                changes = resolution.date_changes()
                if not dry_run:
                    apply_assignments(resolution)
                    await db.flush()

            result.affected += len(changes)
            result.details.append({
                "user_id": str(user_id),
                "pending_points": len(resolution.pending),
                "gbro_expires_at": _iso(resolution.scheduled_for),
                "dates_changed": len(changes),
                "projected_schedule": [
                    {"date": _iso(when), "point_ids": [str(p.id) for p in cohort]}
                    for when, cohort in resolution.projected_schedule()
                ],
            })
        logger.info(
            "initialize-gbro-dates: %d date(s) %s",
            result.affected, "would change" if dry_run else "changed",
        )
        return result

    @staticmethod
    async def fix_gbro_dates(
        db: AsyncSession,
        now: datetime,
        *,
        dry_run: bool = False,
    ) -> MaintenanceResult:
        """Re-anchor pending cohorts of users who have already had GBRO.

        The next cohort is due one window after the *scheduled* date of the
        last resolved cohort, not after the day the batch actually ran,
        unless a newer violation has restarted the clock.
        """
        result = MaintenanceResult(action="fix-gbro-dates", dry_run=dry_run)
        size = settings.GBRO_COHORT_SIZE
        window = gbro_window()

        history = await db.execute(
            select(AttendancePoint.user_id)
            .where(
                AttendancePoint.is_expired.is_(True),
                AttendancePoint.expiration_type == ExpirationKind.gbro,
                AttendancePoint.gbro_expires_at.is_not(None),
            )
            .distinct()
        )
        for user_id in sorted(history.scalars().all(), key=str):
            async with db.begin_nested():
                points = await _locked_user_points(db, user_id)
                pending = order_pending(points)
                if not pending:
                    continue
                last_scheduled = max(
                    p.gbro_expires_at for p in points
                    if p.is_expired
                    and p.expiration_type == ExpirationKind.gbro
                    and p.gbro_expires_at is not None
                )
                target = reference_date(pending, start_of_day(last_scheduled)) + window

                changed = []
                for index, point in enumerate(pending):
                    wanted = target if index < size else None
                    if point.gbro_expires_at != wanted:
                        changed.append((point, point.gbro_expires_at, wanted))
                        if not dry_run:
                            point.gbro_expires_at = wanted
                if not dry_run:
                    await db.flush()

            result.affected += len(changed)
            for point, old, new in changed:
                result.details.append({
                    "user_id": str(user_id),
                    "point_id": str(point.id),
                    "old": _iso(old),
                    "new": _iso(new),
                })
        logger.info("fix-gbro-dates: %d date(s) corrected", result.affected)
        return result

    # ── SRO dates ───────────────────────────────────────────────────

    @staticmethod
    async def recompute_sro_dates(
        db: AsyncSession,
        *,
        dry_run: bool = False,
    ) -> MaintenanceResult:
        """Rebuild ``expires_at`` and the planned expiration kind of live points."""
        result = MaintenanceResult(action="recompute-sro-dates", dry_run=dry_run)
        rows = await db.execute(
            select(AttendancePoint).where(AttendancePoint.is_expired.is_(False))
        )
        for point in rows.scalars().all():
            expected_at = compute_expires_at(point.shift_date, point.point_type, point.is_advised)
            expected_kind = planned_expiration_kind(point.point_type, point.is_advised)
            current_at = ensure_utc(point.expires_at)
            if current_at == expected_at and point.expiration_type == expected_kind:
                continue

            result.affected += 1
            result.details.append({
                "point_id": str(point.id),
                "user_id": str(point.user_id),
                "old_expires_at": _iso(current_at),
                "new_expires_at": _iso(expected_at),
                "expiration_type": expected_kind.value,
            })
            if dry_run:
                continue
            point.expires_at = expected_at
            point.expiration_type = expected_kind
            await create_audit_entry(
                db,
                action="repair",
                entity_type="attendance_point",
                entity_id=point.id,
                old_values={"expires_at": _iso(current_at)},
                new_values={"expires_at": _iso(expected_at)},
                user_agent="recompute-sro-dates",
            )
        if not dry_run:
            await db.flush()
        logger.info("recompute-sro-dates: %d point(s) updated", result.affected)
        return result

    # ── Bulk reset ──────────────────────────────────────────────────

    @staticmethod
    async def reset_expired(
        db: AsyncSession,
        now: datetime,
        *,
        user_ids: Optional[list[uuid.UUID]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        dry_run: bool = False,
    ) -> MaintenanceResult:
        """Reset expired (never excused) points, optionally filtered."""
        result = MaintenanceResult(action="reset-expired", dry_run=dry_run)
        query = select(AttendancePoint).where(
            AttendancePoint.is_expired.is_(True),
            AttendancePoint.is_excused.is_(False),
        )
        if user_ids:
            query = query.where(AttendancePoint.user_id.in_(user_ids))
        if date_from is not None:
            query = query.where(AttendancePoint.shift_date >= date_from)
        if date_to is not None:
            query = query.where(AttendancePoint.shift_date <= date_to)
        rows = await db.execute(query.order_by(AttendancePoint.shift_date))

        for point in rows.scalars().all():
            result.affected += 1
            result.details.append({
                "point_id": str(point.id),
                "user_id": str(point.user_id),
                "shift_date": _iso(point.shift_date),
                "expiration_type": point.expiration_type.value,
            })
            if not dry_run:
                await PointService.reset_point(db, point.id, now)
        logger.info("reset-expired: %d point(s) reset", result.affected)
        return result

    # ── Duplicates ──────────────────────────────────────────────────

    @staticmethod
    async def _duplicate_groups(db: AsyncSession) -> list[tuple]:
        rows = await db.execute(
            select(
                AttendancePoint.user_id,
                AttendancePoint.shift_date,
                AttendancePoint.point_type,
            )
            .group_by(
                AttendancePoint.user_id,
                AttendancePoint.shift_date,
                AttendancePoint.point_type,
            )
            .having(func.count(AttendancePoint.id) > 1)
        )
        return [tuple(row) for row in rows.all()]

    @staticmethod
    async def remove_duplicates(
        db: AsyncSession,
        *,
        dry_run: bool = False,
    ) -> MaintenanceResult:
        """Collapse points sharing user, shift date and violation type.

        The survivor is an excused point if there is one, else the oldest.
        """
        result = MaintenanceResult(action="remove-duplicates", dry_run=dry_run)
        for user_id, shift_date, point_type in await MaintenanceService._duplicate_groups(db):
            rows = await db.execute(
                select(AttendancePoint).where(
                    and_(
                        AttendancePoint.user_id == user_id,
                        AttendancePoint.shift_date == shift_date,
                        AttendancePoint.point_type == point_type,
                    )
                )
            )
            group = sorted(
                rows.scalars().all(),
                key=lambda p: (
                    not p.is_excused,
                    ensure_utc(p.created_at).timestamp() if p.created_at else 0.0,
                    str(p.id),
                ),
            )
            keep, duplicates = group[0], group[1:]
            for point in duplicates:
                result.affected += 1
                result.details.append({
                    "user_id": str(user_id),
                    "shift_date": _iso(shift_date),
                    "point_type": point_type.value,
                    "kept": str(keep.id),
                    "removed": str(point.id),
                })
                if dry_run:
                    continue
                await create_audit_entry(
                    db,
                    action="delete",
                    entity_type="attendance_point",
                    entity_id=point.id,
                    old_values={"duplicate_of": str(keep.id), "points": str(point.points)},
                    user_agent="remove-duplicates",
                )
                await db.delete(point)
        if not dry_run:
            await db.flush()
        logger.info("remove-duplicates: %d point(s) removed", result.affected)
        return result

    # ── GBRO replay ─────────────────────────────────────────────────

    @staticmethod
    async def recalculate_user_gbro(
        db: AsyncSession,
        user_id: uuid.UUID,
        now: datetime,
        *,
        dry_run: bool = False,
    ) -> MaintenanceResult:
        """Undo a user's GBRO history and replay it day by day.

        GBRO-expired points are reset, then every day from the oldest
        violation up to yesterday is evaluated exactly as the daily pass
        would have (SRO first, then one cohort), with expirations stamped
        on the day they were due. Today is left to the regular pass; the
        pending cohort ends up dated.
        """
        result = MaintenanceResult(action="recalculate-gbro", dry_run=dry_run)
        now = ensure_utc(now)
        today = now.date()
        batch_id = new_batch_id(now, prefix="cascade_")

        savepoint = await db.begin_nested()
        try:
            points = await _locked_user_points(db, user_id)
            for point in points:
                if point.is_expired and point.expiration_type == ExpirationKind.gbro:
                    clear_expiry(point)
                    result.details.append({"point_id": str(point.id), "event": "reset"})
                elif is_gbro_pending(point):
                    point.gbro_expires_at = None

            candidates = [p for p in points if is_gbro_pending(p)]
            last_applied = _last_applied(points)
            if candidates:
                day = min(p.shift_date for p in candidates)
                while day < today:
                    visible = [p for p in candidates if p.shift_date <= day]
                    for point in visible:
                        if sro_due(point, day):
                            apply_sro(point, ensure_utc(point.expires_at))
                            result.details.append({
                                "point_id": str(point.id),
                                "event": "sro",
                                "date": _iso(day),
                            })
                    resolution = resolve_cohorts(
                        visible, start_of_day(day), last_applied_at=last_applied,
                    )
                    apply_assignments(resolution)
                    if resolution.resolved:
                        applied_at = start_of_day(resolution.scheduled_for)
                        for point in resolution.resolved:
                            apply_gbro(point, applied_at, batch_id)
                            result.details.append({
                                "point_id": str(point.id),
                                "event": "gbro",
                                "date": _iso(resolution.scheduled_for),
                            })
                        last_applied = applied_at
                    day += timedelta(days=1)

                final = resolve_cohorts(
                    candidates, now, last_applied_at=last_applied, expire=False,
                )
                apply_assignments(final)
                result.details.append({
                    "event": "pending",
                    "gbro_expires_at": _iso(final.scheduled_for),
                    "point_ids": [str(p.id) for p in final.pending[:settings.GBRO_COHORT_SIZE]],
                })

            result.affected = sum(
                1 for entry in result.details if entry.get("event") in ("reset", "gbro", "sro")
            )
            await db.flush()
        except Exception:
            await savepoint.rollback()
            raise

        if dry_run:
            await savepoint.rollback()
        else:
            await savepoint.commit()
            await create_audit_entry(
                db,
                action="repair",
                entity_type="attendance_point_user",
                entity_id=user_id,
                new_values={"batch_id": batch_id, "events": result.affected},
                user_agent="recalculate-gbro",
            )
        logger.info(
            "recalculate-gbro for user %s: %d event(s)%s",
            user_id, result.affected, " (dry run)" if dry_run else "",
        )
        return result

    # ── Stats ───────────────────────────────────────────────────────

    @staticmethod
    async def management_stats(db: AsyncSession, now: datetime) -> ManagementStats:
        """Counts for the point management screen."""
        tomorrow = start_of_day(ensure_utc(now).date() + timedelta(days=1))

        async def _count(*conditions) -> int:
            query = select(func.count(AttendancePoint.id))
            if conditions:
                query = query.where(*conditions)
            return (await db.execute(query)).scalar_one()

        not_expired = AttendancePoint.is_expired.is_(False)
        not_excused = AttendancePoint.is_excused.is_(False)

        groups = await MaintenanceService._duplicate_groups(db)
        duplicate_points = 0
        for user_id, shift_date, point_type in groups:
            duplicate_points += await _count(
                AttendancePoint.user_id == user_id,
                AttendancePoint.shift_date == shift_date,
                AttendancePoint.point_type == point_type,
            ) - 1

        return ManagementStats(
            total_points=await _count(),
            active_points=await _count(not_expired, not_excused),
            expired_points=await _count(AttendancePoint.is_expired.is_(True), not_excused),
            excused_points=await _count(AttendancePoint.is_excused.is_(True)),
            sro_expired=await _count(
                AttendancePoint.is_expired.is_(True),
                AttendancePoint.expiration_type == ExpirationKind.sro,
            ),
            gbro_expired=await _count(
                AttendancePoint.is_expired.is_(True),
                AttendancePoint.expiration_type == ExpirationKind.gbro,
            ),
            pending_sro=await _count(
                not_expired,
                not_excused,
                AttendancePoint.expires_at.is_not(None),
                AttendancePoint.expires_at < tomorrow,
            ),
            duplicate_groups=len(groups),
            duplicate_points=duplicate_points,
            high_points_employees=len(await PointService.high_points_employees(db)),
        )
