"""As-of-time evaluation of attendance points.

A point's historical state is reconstructed from four stored fields only
(``shift_date``, ``excused_at``, ``expired_at`` and the two flags), so a
balance at any past instant can be re-derived without an event log. This is
what leave adjudication uses to judge a request against the discipline
state that existed when it was submitted.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from discipline.common.constants import ViolationType
from discipline.points.models import AttendancePoint
from discipline.points.policy import ensure_utc, start_of_day


def active_as_of(point: AttendancePoint, instant: datetime) -> bool:
    """Return True if *point* counted against its owner at *instant*.

    The violation must have happened before *instant*, and the point must
    be either still active, or have been excused / expired only after
    *instant*.
    """
    instant = ensure_utc(instant)
    if start_of_day(point.shift_date) >= instant:
        return False

    if not point.is_excused and not point.is_expired:
        return True

    if point.is_excused:
        excused_at = ensure_utc(point.excused_at)
        return excused_at is not None and excused_at > instant

    expired_at = ensure_utc(point.expired_at)
    return expired_at is not None and expired_at > instant


def sum_active_as_of(points: Iterable[AttendancePoint], instant: datetime) -> Decimal:
    total = Decimal("0")
    for point in points:
        if active_as_of(point, instant):
            total += Decimal(point.points)
    return total


def balance_breakdown(
    points: Iterable[AttendancePoint],
    instant: datetime,
) -> tuple[Decimal, int, dict[ViolationType, Decimal]]:
    """Return (total, active count, total per violation type) as of *instant*."""
    by_type: dict[ViolationType, Decimal] = {vt: Decimal("0") for vt in ViolationType}
    total = Decimal("0")
    count = 0
    for point in points:
        if not active_as_of(point, instant):
            continue
        value = Decimal(point.points)
        by_type[point.point_type] += value
        total += value
        count += 1
    return total, count, by_type
