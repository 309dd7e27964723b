"""Good Behavior Roll Off (GBRO) cohort resolution.

GBRO Rules:
  - A user's pending points are the active, non-excused, GBRO-eligible
    points that GBRO has not yet touched, ordered newest violation first.
  - They are forgiven in cohorts of two: cohort 0 is the newest pair,
    cohort 1 the next pair, and so on. Only cohort 0 carries a predicted
    roll-off date (``gbro_expires_at``); every other pending point is NULL.
  - Cohort 0's date is the newest violation (or a later GBRO application)
    plus 60 days. A violation newer than the cohort's reference resets it.
  - Once cohort 0's date is reached both points expire together and the
    next cohort is dated from the *scheduled* date plus 60 days, never the
    actual run date, so a late batch does not cost the employee time.
  - A lone pending point is dated but held until a second one accrues.

``resolve_cohorts`` is pure and shared by the daily expiration pass and the
repair tools so the two can never drift apart.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from discipline.common.constants import ExpirationKind
from discipline.config import settings
from discipline.points.models import AttendancePoint
from discipline.points.policy import ensure_utc, gbro_window


def is_gbro_pending(point: AttendancePoint) -> bool:
    return (
        point.eligible_for_gbro
        and not point.is_expired
        and not point.is_excused
        and point.gbro_applied_at is None
    )


def _newest_first_key(point: AttendancePoint):
    created = ensure_utc(point.created_at)
    return (point.shift_date, created.timestamp() if created else 0.0, str(point.id))


def order_pending(points: Iterable[AttendancePoint]) -> list[AttendancePoint]:
    return sorted(
        (p for p in points if is_gbro_pending(p)),
        key=_newest_first_key,
        reverse=True,
    )


def reference_date(
    pending: list[AttendancePoint],
    last_applied_at: Optional[datetime],
) -> date:
    """Newest violation date, unless GBRO was applied to this user later."""
    reference = pending[0].shift_date
    applied = ensure_utc(last_applied_at)
    if applied is not None and applied.date() > reference:
        return applied.date()
    return reference


def _standing_schedule(head: list[AttendancePoint], window: timedelta) -> Optional[date]:
    """Return cohort 0's existing date if it is still valid, else None."""
    dated = {p.gbro_expires_at for p in head if p.gbro_expires_at is not None}
    if len(dated) != 1:
        return None
    scheduled = dated.pop()
    anchor = scheduled - window
    if any(p.shift_date > anchor for p in head):
        # a violation after the anchor restarts the clock
        return None
    return scheduled


class CohortResolution:
    """Outcome of resolving one user's GBRO cohorts at a given instant."""

    def __init__(
        self,
        *,
        pending: list[AttendancePoint],
        resolved: list[AttendancePoint],
        scheduled_for: Optional[date],
        still_pending: list[AttendancePoint],
        assignments: dict[uuid.UUID, Optional[date]],
        reanchored: bool,
    ) -> None:
        self.pending = pending
        self.resolved = resolved
        self.scheduled_for = scheduled_for
        self.still_pending = still_pending
        self.assignments = assignments
        self.reanchored = reanchored

    @property
    def next_scheduled_for(self) -> Optional[date]:
        if not self.still_pending:
            return None
        return self.assignments[self.still_pending[0].id]

    def date_changes(self) -> list[tuple[AttendancePoint, Optional[date]]]:
        return [
            (p, self.assignments[p.id])
            for p in self.still_pending
            if p.gbro_expires_at != self.assignments[p.id]
        ]

    def projected_schedule(self) -> list[tuple[date, list[AttendancePoint]]]:
        """Every remaining cohort with the date it would resolve on if no new
        violation occurs. Only the first entry is ever persisted."""
        first = self.next_scheduled_for
        if first is None:
            return []
        size = settings.GBRO_COHORT_SIZE
        window = gbro_window()
        schedule = []
        for index in range(0, len(self.still_pending), size):
            cohort = self.still_pending[index:index + size]
            schedule.append((first + window * (index // size), cohort))
        return schedule


def resolve_cohorts(
    points: Iterable[AttendancePoint],
    now: datetime,
    *,
    last_applied_at: Optional[datetime] = None,
    expire: bool = True,
) -> CohortResolution:
    """Resolve at most one cohort for a single user's points.

    Args:
        points: the user's points; anything not GBRO-pending is ignored.
        now: evaluation instant; only its calendar date matters.
        last_applied_at: most recent ``gbro_applied_at`` across the user's
            points, used as the anchor when it is newer than any violation.
        expire: when False only (re)compute dates, never resolve a cohort.
    """
    size = settings.GBRO_COHORT_SIZE
    window = gbro_window()
    today = ensure_utc(now).date()

    pending = order_pending(points)
    if not pending:
        return CohortResolution(
            pending=[], resolved=[], scheduled_for=None,
            still_pending=[], assignments={}, reanchored=False,
        )

    head = pending[:size]
    scheduled = _standing_schedule(head, window)
    reanchored = scheduled is None
    if scheduled is None:
        scheduled = reference_date(pending, last_applied_at) + window

    if expire and len(head) == size and scheduled <= today:
        resolved = head
        still_pending = pending[size:]
        next_date = scheduled + window
    else:
        resolved = []
        still_pending = pending
        next_date = scheduled

    assignments = {
        p.id: (next_date if index < size else None)
        for index, p in enumerate(still_pending)
    }
    return CohortResolution(
        pending=pending,
        resolved=resolved,
        scheduled_for=scheduled,
        still_pending=still_pending,
        assignments=assignments,
        reanchored=reanchored,
    )


def apply_gbro(point: AttendancePoint, now: datetime, batch_id: str) -> None:
    point.is_expired = True
    point.expired_at = now
    point.expiration_type = ExpirationKind.gbro
    point.gbro_applied_at = now
    point.gbro_batch_id = batch_id


def apply_assignments(resolution: CohortResolution) -> int:
    """Write the resolution's predicted dates onto the pending points."""
    changed = 0
    for point, new_date in resolution.date_changes():
        point.gbro_expires_at = new_date
        changed += 1
    return changed
