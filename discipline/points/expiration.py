"""Expiration pass — the daily batch that applies SRO then GBRO.

Each SRO point is expired inside its own SAVEPOINT and each user's GBRO
resolution inside one SAVEPOINT, so a failure costs at most one point (SRO)
or one user's cohort (GBRO) and a cohort can never half-expire. The caller
owns the outer transaction and commits it.

GBRO may run at most once per calendar day: every real pass writes an
``ExpirationRun`` row and a second pass on the same ``run_date`` skips GBRO
with a warning unless ``force`` is set. Dry runs use the same selection
code and report the same counts but write nothing and notify nobody.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.common.constants import ExpirationKind
from discipline.notifications.service import (
    InAppPointExpiredNotifier,
    NullNotifier,
    PointExpiredNotifier,
)
from discipline.points.gbro import apply_assignments, apply_gbro, resolve_cohorts
from discipline.points.models import AttendancePoint, ExpirationRun
from discipline.points.policy import ensure_utc, start_of_day
from discipline.points.schemas import (
    ExpirationPassOptions,
    ExpirationPassSummary,
    ExpiredPointItem,
    PointFailure,
)
from discipline.points.sro import apply_sro, select_due_sro

logger = logging.getLogger(__name__)


def new_batch_id(now: datetime, prefix: str = "") -> str:
    return f"{prefix}{now.strftime('%Y%m%d%H%M%S')}"


def _expired_item(point: AttendancePoint, kind: ExpirationKind) -> ExpiredPointItem:
    return ExpiredPointItem(
        point_id=point.id,
        user_id=point.user_id,
        shift_date=point.shift_date,
        point_type=point.point_type,
        points=point.points,
        kind=kind,
    )


async def _notify(notifier: PointExpiredNotifier, item: ExpiredPointItem) -> None:
    try:
        await notifier.point_expired(
            user_id=item.user_id,
            violation_type=item.point_type,
            shift_date=item.shift_date,
            points=item.points,
            kind=item.kind,
            point_id=item.point_id,
        )
    except Exception as exc:
        logger.warning(
            "Failed to notify user %s about expired point %s: %s",
            item.user_id, item.point_id, exc,
        )


async def gbro_already_ran(db: AsyncSession, run_date) -> bool:
    result = await db.execute(
        select(ExpirationRun.id)
        .where(
            ExpirationRun.kind == ExpirationKind.gbro,
            ExpirationRun.run_date == run_date,
        )
        .limit(1)
    )
    return result.first() is not None


# ═════════════════════════════════════════════════════════════════════
# ExpirationService
# ═════════════════════════════════════════════════════════════════════


class ExpirationService:
    """Batch coordinator for Standard and Good Behavior Roll Offs."""

    @staticmethod
    async def run_expiration_pass(
        db: AsyncSession,
        now: Optional[datetime] = None,
        options: Optional[ExpirationPassOptions] = None,
        notifier: Optional[PointExpiredNotifier] = None,
    ) -> ExpirationPassSummary:
        """Run SRO, then GBRO, as of *now* and return what happened."""
        now = ensure_utc(now or datetime.now(timezone.utc))
        options = options or ExpirationPassOptions()
        if options.dry_run or not options.notify:
            notifier = NullNotifier()
        elif notifier is None:
            notifier = InAppPointExpiredNotifier(db)

        summary = ExpirationPassSummary(
            batch_id=new_batch_id(now),
            run_date=now.date(),
            dry_run=options.dry_run,
        )
        logger.info(
            "Starting point expiration pass %s for %s%s",
            summary.batch_id, summary.run_date, " (dry run)" if options.dry_run else "",
        )

        await ExpirationService._process_sro(db, now, options, notifier, summary)
        await ExpirationService._process_gbro(db, now, options, notifier, summary)

        logger.info(
            "Expiration pass %s finished: %d SRO, %d GBRO, %d dates updated, %d failures",
            summary.batch_id, summary.sro_expired, summary.gbro_expired,
            summary.dates_updated, len(summary.failures),
        )
        return summary

    # ── SRO ─────────────────────────────────────────────────────────

    @staticmethod
    async def _process_sro(
        db: AsyncSession,
        now: datetime,
        options: ExpirationPassOptions,
        notifier: PointExpiredNotifier,
        summary: ExpirationPassSummary,
    ) -> None:
        started_at = datetime.now(timezone.utc)
        tomorrow = start_of_day(now.date() + timedelta(days=1))
        result = await db.execute(
            select(AttendancePoint)
            .where(
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.is_excused.is_(False),
                AttendancePoint.expires_at.is_not(None),
                AttendancePoint.expires_at < tomorrow,
            )
            .order_by(AttendancePoint.expires_at, AttendancePoint.id)
        )
        due = select_due_sro(result.scalars().all(), now)

        for point in due:
            item = _expired_item(point, ExpirationKind.sro)
            if options.dry_run:
                summary.expired.append(item)
                summary.sro_expired += 1
                continue

            try:
                async with db.begin_nested():
                    apply_sro(point, now)
                    await db.flush()
            except Exception as exc:
                logger.exception("SRO failed for point %s", item.point_id)
                summary.failures.append(PointFailure(
                    point_id=item.point_id,
                    user_id=item.user_id,
                    stage="sro",
                    error=str(exc),
                ))
                continue

            summary.expired.append(item)
            summary.sro_expired += 1
            await _notify(notifier, item)

        if not options.dry_run:
            db.add(ExpirationRun(
                batch_id=summary.batch_id,
                kind=ExpirationKind.sro,
                run_date=summary.run_date,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                expired_count=summary.sro_expired,
                forced=options.force,
            ))
            await db.flush()
        logger.info("SRO: %d point(s) expired", summary.sro_expired)

    # ── GBRO ────────────────────────────────────────────────────────

    @staticmethod
    async def _process_gbro(
        db: AsyncSession,
        now: datetime,
        options: ExpirationPassOptions,
        notifier: PointExpiredNotifier,
        summary: ExpirationPassSummary,
    ) -> None:
        if not options.force and await gbro_already_ran(db, summary.run_date):
            message = (
                f"GBRO already processed for {summary.run_date}; "
                "skipping. Use force to run it again."
            )
            logger.warning(message)
            summary.warnings.append(message)
            summary.gbro_skipped = True
            return

        started_at = datetime.now(timezone.utc)
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
        user_ids = sorted(result.scalars().all(), key=str)
        # a dry run has not really expired the SRO points, so hide them here
        sro_ids = {
            item.point_id for item in summary.expired if item.kind == ExpirationKind.sro
        } if options.dry_run else set()

        for user_id in user_ids:
            try:
                expired, changed = await ExpirationService._resolve_user(
                    db, user_id, now, summary.batch_id, options.dry_run, sro_ids,
                )
            except Exception as exc:
                logger.exception("GBRO failed for user %s", user_id)
                summary.failures.append(PointFailure(
                    user_id=user_id,
                    stage="gbro",
                    error=str(exc),
                ))
                continue

            summary.dates_updated += changed
            for item in expired:
                summary.expired.append(item)
                summary.gbro_expired += 1
                await _notify(notifier, item)

        if not options.dry_run:
            db.add(ExpirationRun(
                batch_id=summary.batch_id,
                kind=ExpirationKind.gbro,
                run_date=summary.run_date,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                expired_count=summary.gbro_expired,
                forced=options.force,
            ))
            await db.flush()
        logger.info(
            "GBRO: %d point(s) expired, %d date(s) updated",
            summary.gbro_expired, summary.dates_updated,
        )

    @staticmethod
    async def _resolve_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        now: datetime,
        batch_id: str,
        dry_run: bool,
        skip_ids: set[uuid.UUID],
    ) -> tuple[list[ExpiredPointItem], int]:
        """Resolve one user's cohort. Returns (expired items, dates changed)."""
        query = (
            select(AttendancePoint)
            .where(AttendancePoint.user_id == user_id)
            .with_for_update()
        )

        if dry_run:
            points = [
                p for p in (await db.execute(query)).scalars().all()
                if p.id not in skip_ids
            ]
            resolution = _resolution_for(points, now)
            return (
                [_expired_item(p, ExpirationKind.gbro) for p in resolution.resolved],
                len(resolution.date_changes()),
            )

        async with db.begin_nested():
            points = (await db.execute(query)).scalars().all()
            resolution = _resolution_for(points, now)
            for point in resolution.resolved:
                apply_gbro(point, now, batch_id)
            changed = apply_assignments(resolution)
            await db.flush()

        if resolution.resolved:
            logger.info(
                "GBRO expired %d point(s) for user %s (scheduled %s)",
                len(resolution.resolved), user_id, resolution.scheduled_for,
            )
        return [_expired_item(p, ExpirationKind.gbro) for p in resolution.resolved], changed


def _resolution_for(points, now: datetime):
    applied = [ensure_utc(p.gbro_applied_at) for p in points if p.gbro_applied_at]
    return resolve_cohorts(
        points, now, last_applied_at=max(applied) if applied else None,
    )
