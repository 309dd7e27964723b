"""Attendance point Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Request  → request bodies (write)
  - *Response / *Out    → response bodies (read)
  - *Options / *Summary → batch pass inputs and reports
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from discipline.common.constants import (
    ExpirationKind,
    PointStatus,
    ViolationType,
)
from discipline.common.pagination import PaginationMeta


# ═════════════════════════════════════════════════════════════════════
# Point lifecycle
# ═════════════════════════════════════════════════════════════════════


class PointCreate(BaseModel):
    """Record a violation against a user's shift."""

    user_id: uuid.UUID
    shift_date: date
    point_type: ViolationType
    points: Optional[Decimal] = Field(
        default=None, description="Defaults to the standard value for the violation type"
    )
    eligible_for_gbro: Optional[bool] = Field(
        default=None, description="Defaults to False for NCNS, True otherwise"
    )
    is_advised: bool = False
    is_manual: bool = True
    violation_details: Optional[str] = None
    tardy_minutes: Optional[int] = Field(default=None, ge=0)
    undertime_minutes: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None

    @field_validator("points")
    @classmethod
    def points_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("points must be greater than 0")
        return v


class ExcuseRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class PointOut(BaseModel):
    """Full attendance point representation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    shift_date: date
    point_type: ViolationType
    points: Decimal
    status: PointStatus
    formatted_type: str
    eligible_for_gbro: bool
    is_advised: bool
    is_manual: bool
    violation_details: Optional[str] = None
    tardy_minutes: Optional[int] = None
    undertime_minutes: Optional[int] = None
    notes: Optional[str] = None
    is_excused: bool
    excused_at: Optional[datetime] = None
    excused_by: Optional[uuid.UUID] = None
    excuse_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    gbro_expires_at: Optional[date] = None
    gbro_applied_at: Optional[datetime] = None
    gbro_batch_id: Optional[str] = None
    is_expired: bool
    expired_at: Optional[datetime] = None
    expiration_type: ExpirationKind
    created_at: datetime


class PointListResponse(BaseModel):
    data: list[PointOut]
    meta: PaginationMeta


# ═════════════════════════════════════════════════════════════════════
# Balances and GBRO status
# ═════════════════════════════════════════════════════════════════════


class BalanceResponse(BaseModel):
    """Active point total for a user as of an instant."""

    user_id: uuid.UUID
    as_of: datetime
    total_points: Decimal
    active_count: int
    by_type: dict[ViolationType, Decimal]


class GbroStatusResponse(BaseModel):
    """Progress towards the user's next Good Behavior Roll Off."""

    user_id: uuid.UUID
    reference_date: Optional[date] = None
    reference_type: Optional[str] = Field(
        default=None, description="'violation' or 'gbro' — what the 60-day clock counts from"
    )
    days_clean: int = 0
    days_until_gbro: Optional[int] = None
    next_gbro_date: Optional[date] = None
    eligible_points_count: int = 0
    eligible_points_sum: Decimal = Decimal("0")
    next_cohort_sum: Decimal = Decimal("0")
    is_gbro_ready: bool = False


class HighPointsEmployee(BaseModel):
    user_id: uuid.UUID
    total_points: Decimal
    violations_count: int


# ═════════════════════════════════════════════════════════════════════
# Expiration pass
# ═════════════════════════════════════════════════════════════════════


class ExpirationPassOptions(BaseModel):
    dry_run: bool = False
    force: bool = Field(default=False, description="Run GBRO even if it already ran today")
    notify: bool = True


class ExpiredPointItem(BaseModel):
    point_id: uuid.UUID
    user_id: uuid.UUID
    shift_date: date
    point_type: ViolationType
    points: Decimal
    kind: ExpirationKind


class PointFailure(BaseModel):
    point_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    stage: str
    error: str


class ExpirationPassSummary(BaseModel):
    """Report of one expiration pass (real or dry run)."""

    batch_id: str
    run_date: date
    dry_run: bool
    sro_expired: int = 0
    gbro_expired: int = 0
    gbro_skipped: bool = False
    dates_updated: int = 0
    expired: list[ExpiredPointItem] = Field(default_factory=list)
    failures: list[PointFailure] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def total_expired(self) -> int:
        return self.sro_expired + self.gbro_expired


# ═════════════════════════════════════════════════════════════════════
# Maintenance
# ═════════════════════════════════════════════════════════════════════


class MaintenanceResult(BaseModel):
    action: str
    affected: int = 0
    dry_run: bool = False
    details: list[dict[str, Any]] = Field(default_factory=list)


class ManagementStats(BaseModel):
    """Point-table health figures shown on the management screen."""

    total_points: int
    active_points: int
    expired_points: int
    excused_points: int
    sro_expired: int
    gbro_expired: int
    pending_sro: int
    duplicate_groups: int
    duplicate_points: int
    high_points_employees: int
