"""Standard Roll Off (SRO): fixed-duration expiration of a point."""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable

from discipline.common.constants import ExpirationKind
from discipline.points.models import AttendancePoint
from discipline.points.policy import ensure_utc


def sro_due(point: AttendancePoint, today: date) -> bool:
    """Date-only comparison so the batch's time of day never matters."""
    if point.is_expired or point.is_excused or point.expires_at is None:
        return False
    return ensure_utc(point.expires_at).date() <= today


def select_due_sro(points: Iterable[AttendancePoint], now: datetime) -> list[AttendancePoint]:
    today = ensure_utc(now).date()
    return [p for p in points if sro_due(p, today)]


def apply_sro(point: AttendancePoint, now: datetime) -> None:
    point.is_expired = True
    point.expired_at = now
    point.expiration_type = ExpirationKind.sro
