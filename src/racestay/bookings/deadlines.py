"""Host response deadlines: computation, expiry sweep and reminders.

A pending booking that passes its ``host_response_deadline`` is expired by
the sweep: cancelled by ``system``, the guest's reserved cost refunded, the
host penalized and the guest compensated. The conditional status update is
the only write gate, so overlapping sweeps (or a sweep racing a manual
respond) apply the side effects at most once.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.config import Settings, get_settings
from racestay.db.base import utcnow
from racestay.db.enums import BookingStatus, CancelledBy, NotificationType, TransactionType
from racestay.db.models import Booking
from racestay.notifications.service import create_notification
from racestay.points.ledger import credit, debit
from racestay.realtime.changes import ChangeCollector
from racestay.realtime.publisher import commit_and_publish

logger = logging.getLogger(__name__)

EXPIRED_RESPONSE_MESSAGE = "Expired - no response before the deadline"

Clock = Callable[[], datetime]


@dataclass
class SweepResult:
    expired: int = 0
    skipped: int = 0
    failed: int = 0


class DeadlineScheduler:
    """Deadline policy plus the idempotent expiry sweep."""

    def __init__(self, settings: Settings | None = None, clock: Clock | None = None) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    @property
    def response_window(self) -> timedelta:
        return timedelta(hours=self.settings.host_response_window_hours)

    def compute_deadline(self, created_at: datetime | None = None) -> datetime:
        return (created_at or self.clock()) + self.response_window

    def is_expired(self, booking: Booking, now: datetime | None = None) -> bool:
        now = now or self.clock()
        return booking.status is BookingStatus.PENDING and now >= booking.host_response_deadline

    def hours_remaining(self, booking: Booking, now: datetime | None = None) -> int:
        now = now or self.clock()
        seconds = (booking.host_response_deadline - now).total_seconds()
        return max(0, math.ceil(seconds / 3600))

    async def find_overdue(
        self,
        db: AsyncSession,
        *,
        user_id: int | None = None,
        limit: int = 500,
    ) -> list[int]:
        """Ids of pending bookings past their deadline, oldest deadline first."""
        query = select(Booking.id).where(
            Booking.status == BookingStatus.PENDING,
            Booking.host_response_deadline <= self.clock(),
        )
        if user_id is not None:
            query = query.where((Booking.host_id == user_id) | (Booking.guest_id == user_id))
        result = await db.execute(query.order_by(Booking.host_response_deadline.asc()).limit(limit))
        return list(result.scalars().all())

    async def expire_booking(
        self,
        db: AsyncSession,
        booking_id: int,
        changes: ChangeCollector,
    ) -> bool:
        """Expire one overdue booking. Returns False if another actor got there first."""
        now = self.clock()
        result = await db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.PENDING,
                Booking.host_response_deadline <= now,
            )
            .values(
                status=BookingStatus.CANCELLED,
                cancelled_by=CancelledBy.SYSTEM,
                cancelled_at=now,
                updated_at=now,
                host_response_message=EXPIRED_RESPONSE_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        loaded = await db.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )
        booking = loaded.scalar_one()
        penalty = self.settings.expiry_penalty_points
        compensation = self.settings.expiry_compensation_points

        await debit(
            db, booking.host_id, penalty, TransactionType.PENALTY,
            f"No response to booking #{booking.id} before the deadline",
            booking_id=booking.id,
            idempotency_key=f"booking:{booking.id}:expiry_penalty",
            changes=changes,
        )
        if booking.points_cost > 0:
            await credit(
                db, booking.guest_id, booking.points_cost, TransactionType.BOOKING_REFUND,
                f"Refund for expired booking #{booking.id}",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:refund",
                changes=changes,
            )
        await credit(
            db, booking.guest_id, compensation, TransactionType.COMPENSATION,
            f"Compensation for expired booking #{booking.id}",
            booking_id=booking.id,
            idempotency_key=f"booking:{booking.id}:expiry_compensation",
            changes=changes,
        )

        await create_notification(
            db, booking.host_id, NotificationType.CANCELLATION_PENALTY,
            title="Booking request expired",
            message=(
                f"You did not respond to booking #{booking.id} before the deadline "
                f"and were penalized {penalty} points."
            ),
            data={"booking_id": booking.id, "penalty": penalty},
            changes=changes,
        )
        await create_notification(
            db, booking.guest_id, NotificationType.BOOKING_EXPIRED,
            title="Booking request expired",
            message=(
                f"The host did not respond in time. {booking.points_cost} points were refunded "
                f"and you received {compensation} points of compensation."
            ),
            data={"booking_id": booking.id, "refund": booking.points_cost, "compensation": compensation},
            changes=changes,
        )
        changes.booking(booking)
        logger.info("Expired booking %d (host=%d, guest=%d)", booking.id, booking.host_id, booking.guest_id)
        return True

    async def sweep(
        self,
        db: AsyncSession,
        redis: Any | None = None,  # noqa: ANN401
        *,
        user_id: int | None = None,
    ) -> SweepResult:
        """Expire every overdue booking, one transaction per booking."""
        outcome = SweepResult()
        for booking_id in await self.find_overdue(db, user_id=user_id):
            changes = ChangeCollector()
            try:
                expired = await self.expire_booking(db, booking_id, changes)
            except Exception:
                await db.rollback()
                outcome.failed += 1
                logger.exception("Failed to expire booking %d", booking_id)
                continue

            if expired:
                await commit_and_publish(db, redis, changes)
                outcome.expired += 1
            else:
                await db.rollback()
                outcome.skipped += 1

        if outcome.expired or outcome.failed:
            logger.info(
                "Deadline sweep: %d expired, %d skipped, %d failed",
                outcome.expired, outcome.skipped, outcome.failed,
            )
        return outcome

    async def send_reminders(self, db: AsyncSession, redis: Any | None = None) -> int:  # noqa: ANN401
        """Remind hosts once per booking when the deadline is near."""
        now = self.clock()
        threshold = now + timedelta(hours=self.settings.deadline_reminder_hours)
        result = await db.execute(
            select(Booking.id).where(
                Booking.status == BookingStatus.PENDING,
                Booking.reminder_sent_at.is_(None),
                Booking.host_response_deadline > now,
                Booking.host_response_deadline <= threshold,
            )
        )
        sent = 0
        for booking_id in list(result.scalars().all()):
            changes = ChangeCollector()
            claimed = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.PENDING,
                    Booking.reminder_sent_at.is_(None),
                )
                .values(reminder_sent_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                await db.rollback()
                continue

            loaded = await db.execute(
                select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
            )
            booking = loaded.scalar_one()
            hours = self.hours_remaining(booking, now)
            await create_notification(
                db, booking.host_id, NotificationType.DEADLINE_REMINDER,
                title="Booking request awaiting your response",
                message=f"You have {hours} hours to respond to booking #{booking.id}.",
                data={"booking_id": booking.id, "hours_remaining": hours},
                changes=changes,
            )
            await commit_and_publish(db, redis, changes)
            sent += 1
        return sent
