"""Notification service — persistence plus the point-expired dispatcher."""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from discipline.common.constants import (
    DISPLAY_DATE_FORMAT,
    EXPIRATION_LABELS,
    VIOLATION_LABELS,
    ExpirationKind,
    NotificationType,
    ViolationType,
)
from discipline.notifications.models import Notification

logger = logging.getLogger(__name__)


# ── Core service ────────────────────────────────────────────────────


class NotificationService:
    """Async notification operations."""

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        type: NotificationType = NotificationType.info,
        title: str,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        """Create a new notification and flush to DB."""
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.add(notification)
        await db.flush()
        return notification


# ── Point-expired dispatch ──────────────────────────────────────────


class PointExpiredNotifier(Protocol):
    """Receives one event per point the expiration pass expires."""

    async def point_expired(
        self,
        *,
        user_id: uuid.UUID,
        violation_type: ViolationType,
        shift_date: date,
        points: Decimal,
        kind: ExpirationKind,
        point_id: Optional[uuid.UUID] = None,
    ) -> None:
        ...


def point_expired_message(
    violation_type: ViolationType,
    shift_date: date,
    points: Decimal,
    kind: ExpirationKind,
) -> str:
    return (
        f"Your {VIOLATION_LABELS[violation_type]} point from "
        f"{shift_date.strftime(DISPLAY_DATE_FORMAT)} ({points} pts) has "
        f"expired via {EXPIRATION_LABELS[kind]}."
    )


class InAppPointExpiredNotifier:
    """Default notifier: writes an in-app ``Notification`` for the employee."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def point_expired(
        self,
        *,
        user_id: uuid.UUID,
        violation_type: ViolationType,
        shift_date: date,
        points: Decimal,
        kind: ExpirationKind,
        point_id: Optional[uuid.UUID] = None,
    ) -> None:
        # own savepoint so a failed insert never poisons the batch session
        async with self.db.begin_nested():
            await NotificationService.create_notification(
                self.db,
                recipient_id=user_id,
                type=NotificationType.info,
                title="Attendance Point Expired",
                message=point_expired_message(violation_type, shift_date, points, kind),
                entity_type="attendance_point",
                entity_id=point_id,
            )


class NullNotifier:
    """Discards every event (``--no-notify`` and dry runs)."""

    async def point_expired(self, **kwargs) -> None:
        logger.debug("Notification suppressed for %s", kwargs.get("point_id"))
