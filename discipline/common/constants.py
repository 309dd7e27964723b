"""Enums and constants for the point engine — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum
from decimal import Decimal


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


# ── Attendance points ───────────────────────────────────────────────

class ViolationType(str, enum.Enum):
    """Violation recorded against a shift.

    An unadvised ``whole_day_absence`` is a No Call, No Show (NCNS); an
    advised one is a Failed-to-Notify absence (FTN).
    """

    whole_day_absence = "whole_day_absence"
    half_day_absence = "half_day_absence"
    tardy = "tardy"
    undertime = "undertime"
    undertime_more_than_hour = "undertime_more_than_hour"


class ExpirationKind(str, enum.Enum):
    none = "none"
    sro = "sro"
    gbro = "gbro"


class PointStatus(str, enum.Enum):
    active = "active"
    excused = "excused"
    expired = "expired"


POINT_VALUES: dict[ViolationType, Decimal] = {
    ViolationType.whole_day_absence: Decimal("1.00"),
    ViolationType.half_day_absence: Decimal("0.50"),
    ViolationType.tardy: Decimal("0.25"),
    ViolationType.undertime: Decimal("0.25"),
    ViolationType.undertime_more_than_hour: Decimal("0.50"),
}

VIOLATION_LABELS: dict[ViolationType, str] = {
    ViolationType.whole_day_absence: "Whole Day Absence",
    ViolationType.half_day_absence: "Half-Day Absence",
    ViolationType.tardy: "Tardy",
    ViolationType.undertime: "Undertime",
    ViolationType.undertime_more_than_hour: "Undertime (>1 Hour)",
}

EXPIRATION_LABELS: dict[ExpirationKind, str] = {
    ExpirationKind.none: "Expired",
    ExpirationKind.sro: "SRO (Standard Roll Off)",
    ExpirationKind.gbro: "GBRO (Good Behavior Roll Off)",
}


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    reminder = "reminder"
    alert = "alert"


# ── Role-based permissions ──────────────────────────────────────────

PERMISSIONS: dict[UserRole, list[str]] = {
    UserRole.employee: [
        "points:read_own",
        "notification:read_own",
    ],
    UserRole.manager: [
        "points:read_own",
        "points:read_team",
        "notification:read_own",
    ],
    UserRole.hr_admin: [
        "points:read_all",
        "points:create",
        "points:excuse",
        "points:maintenance_read",
        "notification:read_own",
    ],
    UserRole.system_admin: [
        "points:read_all",
        "points:create",
        "points:excuse",
        "points:reset",
        "points:run_expirations",
        "points:maintenance_read",
        "notification:read_own",
    ],
}

# ── Misc ────────────────────────────────────────────────────────────

DATE_FORMAT = "%Y-%m-%d"
DISPLAY_DATE_FORMAT = "%b %d, %Y"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
