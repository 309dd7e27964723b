"""Point store ORM models: AttendancePoint, ExpirationRun."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from discipline.common.constants import (
    VIOLATION_LABELS,
    ExpirationKind,
    PointStatus,
    ViolationType,
)
from discipline.database import Base


class AttendancePoint(Base):
    __tablename__ = "attendance_points"
    __table_args__ = (
        sa.Index("ix_attendance_points_user_shift", "user_id", "shift_date"),
        sa.Index("ix_attendance_points_state", "is_expired", "is_excused"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Origin — immutable once created
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    shift_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    point_type: Mapped[ViolationType] = mapped_column(
        sa.Enum(ViolationType, name="violation_type", create_type=False),
        nullable=False,
    )
    points: Mapped[Decimal] = mapped_column(sa.Numeric(5, 2), nullable=False)
    eligible_for_gbro: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    is_advised: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    is_manual: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    violation_details: Mapped[Optional[str]] = mapped_column(sa.Text)
    tardy_minutes: Mapped[Optional[int]] = mapped_column(sa.Integer)
    undertime_minutes: Mapped[Optional[int]] = mapped_column(sa.Integer)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    # Manual override
    is_excused: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    excused_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    excused_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    excuse_reason: Mapped[Optional[str]] = mapped_column(sa.Text)

    # Standard Roll Off
    expires_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    # Good Behavior Roll Off
    gbro_expires_at: Mapped[Optional[date]] = mapped_column(sa.Date)
    gbro_applied_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    gbro_batch_id: Mapped[Optional[str]] = mapped_column(sa.String(50))

    # Terminal
    is_expired: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    expired_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    expiration_type: Mapped[ExpirationKind] = mapped_column(
        sa.Enum(ExpirationKind, name="expiration_kind", create_type=False),
        nullable=False,
        default=ExpirationKind.sro,
    )

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def status(self) -> PointStatus:
        if self.is_excused:
            return PointStatus.excused
        if self.is_expired:
            return PointStatus.expired
        return PointStatus.active

    @property
    def is_ncns(self) -> bool:
        """No Call, No Show: an unadvised whole-day absence."""
        return self.point_type == ViolationType.whole_day_absence and not self.is_advised

    @property
    def formatted_type(self) -> str:
        if self.point_type == ViolationType.whole_day_absence:
            return "Whole Day Absence (FTN)" if self.is_advised else "Whole Day Absence (NCNS)"
        return VIOLATION_LABELS[self.point_type]

    def __repr__(self) -> str:
        return (
            f"<AttendancePoint {self.point_type.value} {self.shift_date} "
            f"user={self.user_id} {self.status.value}>"
        )


class ExpirationRun(Base):
    """One real (non dry-run) expiration sweep, keyed by kind and calendar day."""

    __tablename__ = "point_expiration_runs"
    __table_args__ = (
        sa.Index("ix_point_expiration_runs_kind_date", "kind", "run_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    batch_id: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    kind: Mapped[ExpirationKind] = mapped_column(
        sa.Enum(ExpirationKind, name="expiration_kind", create_type=False),
        nullable=False,
    )
    run_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    started_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    expired_count: Mapped[int] = mapped_column(sa.Integer, default=0)
    forced: Mapped[bool] = mapped_column(sa.Boolean, default=False)
