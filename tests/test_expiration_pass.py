"""Expiration pass test suite — SRO, GBRO, idempotency, dry runs, failures.

Uses the shared conftest.py pattern with in-memory SQLite.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.common.constants import ExpirationKind, ViolationType
from discipline.notifications.models import Notification
from discipline.points import expiration as expiration_module
from discipline.points.expiration import ExpirationService
from discipline.points.models import AttendancePoint, ExpirationRun
from discipline.points.schemas import ExpirationPassOptions
from discipline.points.service import PointService
from discipline.points.temporal import active_as_of
from tests.conftest import gbro_expired, utc


# ── Helpers ─────────────────────────────────────────────────────────


async def _record(
    db: AsyncSession,
    user_id: uuid.UUID,
    shift_date: date,
    violation_type: ViolationType = ViolationType.tardy,
    **kwargs,
) -> AttendancePoint:
    point = await PointService.create_point(db, user_id, shift_date, violation_type, **kwargs)
    await db.commit()
    return point


async def _reload(db: AsyncSession, *points: AttendancePoint) -> list[AttendancePoint]:
    ids = [inspect(p).identity[0] for p in points]
    result = await db.execute(
        select(AttendancePoint)
        .where(AttendancePoint.id.in_(ids))
        .execution_options(populate_existing=True)
    )
    by_id = {p.id: p for p in result.scalars().all()}
    return [by_id[i] for i in ids]


async def _run(db: AsyncSession, now, **options):
    summary = await ExpirationService.run_expiration_pass(
        db, now, ExpirationPassOptions(**options),
    )
    await db.commit()
    return summary


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    async def point_expired(self, **kwargs):
        self.calls += 1
        raise RuntimeError("mail relay down")


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def point_expired(self, **kwargs):
        self.events.append(kwargs)


# ═════════════════════════════════════════════════════════════════════
# SRO
# ═════════════════════════════════════════════════════════════════════


class TestStandardRollOff:
    async def test_point_expires_day_after_six_months(self, db: AsyncSession):
        user = uuid.uuid4()
        point = await _record(db, user, date(2025, 1, 1), ViolationType.whole_day_absence, is_advised=True)
        assert point.expires_at.date() == date(2025, 7, 1)

        summary = await _run(db, utc(2025, 7, 2, 1))

        [point] = await _reload(db, point)
        assert summary.sro_expired == 1
        assert point.is_expired is True
        assert point.expiration_type == ExpirationKind.sro
        assert point.expired_at.date() == date(2025, 7, 2)

    async def test_ncns_outlives_six_months(self, db: AsyncSession):
        user = uuid.uuid4()
        point = await _record(db, user, date(2025, 1, 1), ViolationType.whole_day_absence)
        assert point.eligible_for_gbro is False
        assert point.expiration_type == ExpirationKind.none

        await _run(db, utc(2025, 7, 2, 1))
        [point] = await _reload(db, point)
        assert point.is_expired is False

        summary = await _run(db, utc(2026, 1, 1, 1))
        [point] = await _reload(db, point)
        assert summary.sro_expired == 1
        assert point.is_expired is True
        assert point.expiration_type == ExpirationKind.sro

    async def test_excused_point_never_expires(self, db: AsyncSession):
        user = uuid.uuid4()
        point = await _record(db, user, date(2025, 1, 1))
        await PointService.excuse_point(db, point.id, utc(2025, 2, 1))
        await db.commit()

        summary = await _run(db, utc(2025, 8, 1))

        [point] = await _reload(db, point)
        assert summary.sro_expired == 0
        assert point.is_expired is False
        assert active_as_of(point, utc(2025, 1, 15)) is True
        assert active_as_of(point, utc(2025, 3, 1)) is False

    async def test_one_failing_point_does_not_stop_the_pass(self, db: AsyncSession, monkeypatch):
        user = uuid.uuid4()
        bad = await _record(db, user, date(2025, 1, 1))
        good = await _record(db, user, date(2025, 1, 2), eligible_for_gbro=False)
        original = expiration_module.apply_sro

        def _flaky(point, now):
            if point.id == bad.id:
                raise RuntimeError("disk full")
            original(point, now)

        monkeypatch.setattr(expiration_module, "apply_sro", _flaky)
        summary = await _run(db, utc(2025, 7, 3))

        assert summary.sro_expired == 1
        assert len(summary.failures) == 1
        assert summary.failures[0].point_id == bad.id
        assert summary.failures[0].stage == "sro"
        bad, good = await _reload(db, bad, good)
        assert bad.is_expired is False
        assert good.is_expired is True


# ═════════════════════════════════════════════════════════════════════
# GBRO
# ═════════════════════════════════════════════════════════════════════


class TestGoodBehaviorRollOff:
    async def test_pair_expires_sixty_days_after_newest(self, db: AsyncSession):
        user = uuid.uuid4()
        first = await _record(db, user, date(2025, 1, 1))
        second = await _record(db, user, date(2025, 1, 5))

        early = await _run(db, utc(2025, 3, 5, 1))
        assert early.gbro_expired == 0
        assert early.dates_updated == 2

        summary = await _run(db, utc(2025, 3, 6, 1))

        first, second = await _reload(db, first, second)
        assert summary.gbro_expired == 2
        assert gbro_expired(first) and gbro_expired(second)
        assert first.gbro_batch_id == second.gbro_batch_id == summary.batch_id
        assert first.gbro_expires_at == date(2025, 3, 6)

    async def test_cascade_promotes_with_scheduled_date(self, db: AsyncSession):
        user = uuid.uuid4()
        day0 = date(2025, 1, 1)
        points = [await _record(db, user, day0 + timedelta(days=d)) for d in (0, 10, 20, 30)]

        await _run(db, utc(2025, 2, 1))
        # late batch: four days after the pair was due
        summary = await _run(db, utc(2025, 4, 5, 1))
        assert summary.gbro_expired == 2

        p0, p10, p20, p30 = await _reload(db, *points)
        assert gbro_expired(p20) and gbro_expired(p30)
        assert not p0.is_expired and not p10.is_expired
        assert p0.gbro_expires_at == p10.gbro_expires_at == day0 + timedelta(days=150)

        final = await _run(db, utc(2025, 5, 31, 1))
        p0, p10 = await _reload(db, p0, p10)
        assert final.gbro_expired == 2
        assert gbro_expired(p0) and gbro_expired(p10)
        assert p0.gbro_batch_id != p20.gbro_batch_id

    async def test_lone_point_is_held(self, db: AsyncSession):
        user = uuid.uuid4()
        point = await _record(db, user, date(2025, 1, 1))
        summary = await _run(db, utc(2025, 5, 1))
        [point] = await _reload(db, point)
        assert summary.gbro_expired == 0
        assert point.is_expired is False
        assert point.gbro_expires_at == date(2025, 3, 2)

    async def test_cohort_never_half_expires(self, db: AsyncSession, monkeypatch):
        user = uuid.uuid4()
        first = await _record(db, user, date(2025, 1, 1))
        second = await _record(db, user, date(2025, 1, 5))
        original = expiration_module.apply_gbro
        calls = []

        def _fail_second(point, now, batch_id):
            calls.append(point.id)
            if len(calls) == 2:
                raise RuntimeError("connection reset")
            original(point, now, batch_id)

        monkeypatch.setattr(expiration_module, "apply_gbro", _fail_second)
        summary = await _run(db, utc(2025, 3, 10))

        assert summary.gbro_expired == 0
        assert [f.stage for f in summary.failures] == ["gbro"]
        assert summary.failures[0].user_id == user
        first, second = await _reload(db, first, second)
        assert first.is_expired is False
        assert second.is_expired is False

        monkeypatch.setattr(expiration_module, "apply_gbro", original)
        retry = await _run(db, utc(2025, 3, 11))
        first, second = await _reload(db, first, second)
        assert retry.gbro_expired == 2
        assert gbro_expired(first) and gbro_expired(second)


# ═════════════════════════════════════════════════════════════════════
# Idempotency
# ═════════════════════════════════════════════════════════════════════


class TestIdempotency:
    async def _overdue_user(self, db: AsyncSession):
        user = uuid.uuid4()
        day0 = date(2024, 1, 1)
        return [await _record(db, user, day0 + timedelta(days=d)) for d in (0, 10, 20, 30)]

    async def test_second_run_same_day_changes_nothing(self, db: AsyncSession):
        points = await self._overdue_user(db)
        first = await _run(db, utc(2024, 6, 1, 1))
        assert first.gbro_expired == 2
        before = [(p.is_expired, p.gbro_expires_at) for p in await _reload(db, *points)]

        second = await _run(db, utc(2024, 6, 1, 9))

        assert second.gbro_skipped is True
        assert second.gbro_expired == 0
        assert second.sro_expired == 0
        assert len(second.warnings) == 1
        assert "already processed" in second.warnings[0]
        after = [(p.is_expired, p.gbro_expires_at) for p in await _reload(db, *points)]
        assert after == before

    async def test_force_runs_gbro_again(self, db: AsyncSession):
        points = await self._overdue_user(db)
        await _run(db, utc(2024, 6, 1, 1))
        forced = await _run(db, utc(2024, 6, 1, 2), force=True)
        assert forced.gbro_skipped is False
        assert forced.gbro_expired == 2
        assert all(p.is_expired for p in await _reload(db, *points))

    async def test_run_records_written(self, db: AsyncSession):
        await self._overdue_user(db)
        await _run(db, utc(2024, 6, 1, 1))
        runs = (await db.execute(select(ExpirationRun))).scalars().all()
        assert {r.kind for r in runs} == {ExpirationKind.sro, ExpirationKind.gbro}
        gbro_run = next(r for r in runs if r.kind == ExpirationKind.gbro)
        assert gbro_run.run_date == date(2024, 6, 1)
        assert gbro_run.expired_count == 2

    async def test_next_day_runs_normally(self, db: AsyncSession):
        points = await self._overdue_user(db)
        await _run(db, utc(2024, 6, 1, 1))
        next_day = await _run(db, utc(2024, 6, 2, 1))
        assert next_day.gbro_skipped is False
        assert next_day.gbro_expired == 2
        assert all(p.is_expired for p in await _reload(db, *points))


# ═════════════════════════════════════════════════════════════════════
# Dry run
# ═════════════════════════════════════════════════════════════════════


class TestDryRun:
    async def _mixed(self, db: AsyncSession):
        user = uuid.uuid4()
        old = await _record(db, user, date(2024, 12, 1))
        a = await _record(db, user, date(2025, 1, 1))
        b = await _record(db, user, date(2025, 1, 5))
        return old, a, b

    async def test_dry_run_matches_real_run_and_writes_nothing(self, db: AsyncSession):
        points = await self._mixed(db)
        now = utc(2025, 6, 2, 1)

        preview = await _run(db, now, dry_run=True)

        assert preview.dry_run is True
        assert preview.sro_expired == 1
        assert preview.gbro_expired == 2
        assert all(not p.is_expired for p in await _reload(db, *points))
        assert all(p.gbro_expires_at is None for p in await _reload(db, *points))
        assert await _count(db, ExpirationRun) == 0
        assert await _count(db, Notification) == 0

        real = await _run(db, now)

        assert real.sro_expired == preview.sro_expired
        assert real.gbro_expired == preview.gbro_expired
        assert {(i.point_id, i.kind) for i in real.expired} == {
            (i.point_id, i.kind) for i in preview.expired
        }

    async def test_dry_run_reports_skip_after_real_run(self, db: AsyncSession):
        await self._mixed(db)
        await _run(db, utc(2025, 6, 2, 1))
        preview = await _run(db, utc(2025, 6, 2, 5), dry_run=True)
        assert preview.gbro_skipped is True


# ═════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════


class TestNotifications:
    async def test_one_in_app_notification_per_expired_point(self, db: AsyncSession):
        user = uuid.uuid4()
        await _record(db, user, date(2024, 12, 1))
        await _record(db, user, date(2025, 1, 1))
        await _record(db, user, date(2025, 1, 5))

        await _run(db, utc(2025, 6, 2, 1))

        rows = (await db.execute(select(Notification))).scalars().all()
        assert len(rows) == 3
        assert {n.recipient_id for n in rows} == {user}
        assert all(n.entity_type == "attendance_point" for n in rows)
        assert any("Dec 01, 2024" in n.message and "SRO" in n.message for n in rows)
        assert sum("GBRO" in n.message for n in rows) == 2

    async def test_no_notify(self, db: AsyncSession):
        user = uuid.uuid4()
        await _record(db, user, date(2024, 12, 1))
        summary = await _run(db, utc(2025, 6, 2), notify=False)
        assert summary.sro_expired == 1
        assert await _count(db, Notification) == 0

    async def test_custom_notifier_receives_events(self, db: AsyncSession):
        user = uuid.uuid4()
        point = await _record(db, user, date(2024, 12, 1), ViolationType.half_day_absence)
        notifier = RecordingNotifier()
        await ExpirationService.run_expiration_pass(
            db, utc(2025, 6, 2), ExpirationPassOptions(), notifier,
        )
        assert notifier.events == [{
            "user_id": user,
            "violation_type": ViolationType.half_day_absence,
            "shift_date": date(2024, 12, 1),
            "points": point.points,
            "kind": ExpirationKind.sro,
            "point_id": point.id,
        }]

    async def test_notifier_failure_is_swallowed(self, db: AsyncSession, caplog):
        user = uuid.uuid4()
        point = await _record(db, user, date(2024, 12, 1))
        notifier = FailingNotifier()

        with caplog.at_level(logging.WARNING, logger="discipline.points.expiration"):
            summary = await ExpirationService.run_expiration_pass(
                db, utc(2025, 6, 2), ExpirationPassOptions(), notifier,
            )
        await db.commit()

        assert notifier.calls == 1
        assert summary.failures == []
        assert summary.sro_expired == 1
        [point] = await _reload(db, point)
        assert point.is_expired is True
        assert "mail relay down" in caplog.text


# ═════════════════════════════════════════════════════════════════════
# Monotonicity
# ═════════════════════════════════════════════════════════════════════


async def test_expired_points_stay_expired_across_passes(db: AsyncSession):
    user = uuid.uuid4()
    points = [await _record(db, user, date(2025, 1, d)) for d in (1, 2, 3)]
    await _run(db, utc(2025, 7, 4))
    expired_at = [p.expired_at for p in await _reload(db, *points)]

    for day in (5, 6, 7):
        await _run(db, utc(2025, 7, day))

    reloaded = await _reload(db, *points)
    assert all(p.is_expired for p in reloaded)
    assert [p.expired_at for p in reloaded] == expired_at
