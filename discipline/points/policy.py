"""Point policy rules derived from a violation's origin fields.

Everything here is a pure function of ``shift_date``, ``point_type`` and
``is_advised`` so that repair tools can rebuild derived columns at any time.
"""

from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

from discipline.common.constants import POINT_VALUES, ExpirationKind, ViolationType
from discipline.config import settings


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to UTC.

    Naive values are taken to be UTC already (SQLite drops tzinfo on
    round-trip); aware values in any other offset are converted, so that
    ``.date()`` on the result is always the UTC calendar day.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def add_months(day: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    _, last_day = monthrange(year, month)
    return date(year, month, min(day.day, last_day))


def is_ncns(violation_type: ViolationType, is_advised: bool) -> bool:
    return violation_type == ViolationType.whole_day_absence and not is_advised


def default_point_value(violation_type: ViolationType) -> Decimal:
    return POINT_VALUES[violation_type]


def default_gbro_eligibility(violation_type: ViolationType, is_advised: bool) -> bool:
    # NCNS only ever rolls off through SRO
    return not is_ncns(violation_type, is_advised)


def sro_months(violation_type: ViolationType, is_advised: bool) -> int:
    if is_ncns(violation_type, is_advised):
        return settings.NCNS_SRO_MONTHS
    return settings.SRO_MONTHS


def compute_expires_at(
    shift_date: date,
    violation_type: ViolationType,
    is_advised: bool,
) -> datetime:
    """Absolute SRO timestamp: midnight UTC of shift date + 6 or 12 months."""
    return start_of_day(add_months(shift_date, sro_months(violation_type, is_advised)))


def planned_expiration_kind(violation_type: ViolationType, is_advised: bool) -> ExpirationKind:
    """Expiration path recorded on a fresh point before it ever expires."""
    if is_ncns(violation_type, is_advised):
        return ExpirationKind.none
    return ExpirationKind.sro


def gbro_window() -> timedelta:
    return timedelta(days=settings.GBRO_WINDOW_DAYS)
