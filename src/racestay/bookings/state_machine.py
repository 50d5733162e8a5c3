"""Booking lifecycle state machine.

State progression:
    pending -> accepted | rejected | cancelled
    accepted -> confirmed | cancelled
    confirmed -> completed | cancelled
    rejected, completed, cancelled are terminal.

Every transition is a conditional ``UPDATE ... WHERE status = <expected>``.
Exactly one concurrent caller changes the row; its ledger side effects and
notifications are written in the same transaction. The guest's cost is
debited when the request is created, so every cancellation path refunds it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.bookings.deadlines import DeadlineScheduler
from racestay.config import Settings, get_settings
from racestay.db.base import utcnow
from racestay.db.enums import BookingStatus, CancelledBy, NotificationType, TransactionType
from racestay.db.models import Booking, User
from racestay.errors import (
    ConflictError,
    ExpiredError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from racestay.notifications.service import create_notification
from racestay.points.ledger import credit, debit
from racestay.realtime.changes import ChangeCollector

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.ACCEPTED, BookingStatus.REJECTED, BookingStatus.CANCELLED,
    }),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

_missing = set(BookingStatus) - set(VALID_TRANSITIONS)
if _missing:
    raise RuntimeError(f"Transition table missing states: {sorted(s.value for s in _missing)}")

TERMINAL_STATES: frozenset[BookingStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Timestamp column stamped on entry to each non-initial state.
TRANSITION_TIMESTAMPS: dict[BookingStatus, str] = {
    BookingStatus.ACCEPTED: "accepted_at",
    BookingStatus.REJECTED: "rejected_at",
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is an edge of the graph."""
    allowed = VALID_TRANSITIONS[current]
    if target not in allowed:
        raise InvalidTransitionError(
            f"Invalid transition: {current.value} -> {target.value}",
            current_status=current.value,
            target_status=target.value,
        )


@dataclass
class TransitionResult:
    """Outcome of a mutation. ``replayed`` marks a retry answered from prior state."""

    booking: Booking
    replayed: bool = False


class BookingStateMachine:
    """Owns every booking status change and its ledger side effects.

    Methods flush but never commit; the caller commits the unit of work and
    publishes ``changes`` afterwards.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        changes: ChangeCollector | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.changes = changes if changes is not None else ChangeCollector()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.deadlines = DeadlineScheduler(self.settings, clock=self.clock)

    # ------------------------------------------------------------------
    # Loading and guards
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: int) -> Booking:
        result = await self.db.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
        return booking

    @staticmethod
    def _require_role(booking: Booking, actor_id: int, role: str) -> None:
        if booking.party_role(actor_id) != role:
            raise UnauthorizedError(
                f"Only the {role} of booking {booking.id} can do this",
                booking_id=booking.id,
            )

    @staticmethod
    def _is_replay(booking: Booking, target: BookingStatus, operation_id: str | None) -> bool:
        return (
            operation_id is not None
            and booking.last_operation_id == operation_id
            and booking.status is target
        )

    @staticmethod
    def _check_source(booking: Booking, target: BookingStatus) -> None:
        current = booking.status
        if current not in TERMINAL_STATES and current is target:
            raise ConflictError(
                f"Booking {booking.id} is already {current.value}",
                booking_id=booking.id,
                current_status=current.value,
            )
        validate_transition(current, target)

    async def _transition(
        self,
        booking: Booking,
        target: BookingStatus,
        *,
        operation_id: str | None,
        **values: object,
    ) -> TransitionResult:
        """Conditionally move ``booking`` from the status it was read in to ``target``."""
        expected = booking.status
        now = self.clock()
        values[TRANSITION_TIMESTAMPS[target]] = now
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == expected)
            .values(status=target, last_operation_id=operation_id, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )

        fresh = await self.get_booking(booking.id)
        if result.rowcount == 0:
            if self._is_replay(fresh, target, operation_id):
                return TransitionResult(fresh, replayed=True)
            logger.info(
                "Booking %d conflict: expected %s, found %s",
                booking.id, expected.value, fresh.status.value,
            )
            raise ConflictError(
                f"Booking {booking.id} was changed by another action",
                booking_id=booking.id,
                expected_status=expected.value,
                current_status=fresh.status.value,
            )

        self.changes.booking(fresh)
        logger.info("Booking %d: %s -> %s", fresh.id, expected.value, target.value)
        return TransitionResult(fresh)

    async def _find_request(self, guest_id: int, operation_id: str) -> Booking | None:
        result = await self.db.execute(
            select(Booking).where(
                Booking.guest_id == guest_id, Booking.request_operation_id == operation_id,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def request_booking(
        self,
        guest_id: int,
        *,
        host_id: int,
        race_id: int,
        property_id: int,
        check_in_date: date,
        check_out_date: date,
        points_cost: int,
        guests_count: int = 1,
        request_message: str | None = None,
        operation_id: str | None = None,
    ) -> TransitionResult:
        """Create a pending booking and reserve the guest's points."""
        if guest_id == host_id:
            raise ValidationError("You cannot book your own property")
        if check_out_date <= check_in_date:
            raise ValidationError("Check-out date must be after check-in date")
        if guests_count < 1:
            raise ValidationError("At least one guest is required")
        if points_cost < 0:
            raise ValidationError("Points cost cannot be negative")

        if operation_id is not None:
            existing = await self._find_request(guest_id, operation_id)
            if existing is not None:
                return TransitionResult(existing, replayed=True)

        host = await self.db.execute(select(User.id).where(User.id == host_id))
        if host.scalar_one_or_none() is None:
            raise NotFoundError(f"Host {host_id} not found", host_id=host_id)

        now = self.clock()
        booking = Booking(
            guest_id=guest_id,
            host_id=host_id,
            race_id=race_id,
            property_id=property_id,
            status=BookingStatus.PENDING,
            check_in_date=check_in_date,
            check_out_date=check_out_date,
            guests_count=guests_count,
            points_cost=points_cost,
            request_message=request_message,
            host_response_deadline=self.deadlines.compute_deadline(now),
            request_operation_id=operation_id,
            last_operation_id=operation_id,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(booking)
        except IntegrityError:
            # A concurrent retry of the same request won the insert.
            if operation_id is None:
                raise
            existing = await self._find_request(guest_id, operation_id)
            if existing is None:
                raise
            return TransitionResult(existing, replayed=True)

        if points_cost > 0:
            await debit(
                self.db, guest_id, points_cost, TransactionType.BOOKING_PAYMENT,
                f"Booking #{booking.id} request",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:payment",
                changes=self.changes,
            )

        await create_notification(
            self.db, host_id, NotificationType.BOOKING_REQUEST_RECEIVED,
            title="New booking request",
            message=f"You have a new booking request for {guests_count} guest(s).",
            data={"booking_id": booking.id, "guest_id": guest_id, "points_cost": points_cost},
            changes=self.changes,
        )
        self.changes.booking(booking, op="insert")
        logger.info("Booking %d requested by guest %d from host %d", booking.id, guest_id, host_id)
        return TransitionResult(booking)

    async def respond(
        self,
        booking_id: int,
        host_id: int,
        response: BookingStatus | str,
        message: str | None = None,
        *,
        operation_id: str | None = None,
    ) -> TransitionResult:
        """Host accepts or rejects a pending request before its deadline."""
        try:
            target = BookingStatus(response)
        except ValueError:
            raise ValidationError(f"Invalid response: {response}") from None
        if target not in (BookingStatus.ACCEPTED, BookingStatus.REJECTED):
            raise ValidationError("Response must be 'accepted' or 'rejected'")

        booking = await self.get_booking(booking_id)
        self._require_role(booking, host_id, "host")
        if self._is_replay(booking, target, operation_id):
            return TransitionResult(booking, replayed=True)
        self._check_source(booking, target)
        if self.deadlines.is_expired(booking, self.clock()):
            raise ExpiredError(
                f"The response deadline for booking {booking_id} has passed",
                booking_id=booking_id,
            )

        result = await self._transition(
            booking, target, operation_id=operation_id, host_response_message=message,
        )
        if result.replayed:
            return result
        booking = result.booking

        if target is BookingStatus.ACCEPTED:
            await create_notification(
                self.db, booking.guest_id, NotificationType.BOOKING_ACCEPTED,
                title="Booking accepted",
                message=message or "Your booking request was accepted.",
                data={"booking_id": booking.id},
                changes=self.changes,
            )
        else:
            await self._refund_guest(booking, booking.points_cost, "Refund for rejected booking")
            await create_notification(
                self.db, booking.guest_id, NotificationType.BOOKING_REJECTED,
                title="Booking declined",
                message=message or "Your booking request was declined.",
                data={"booking_id": booking.id, "refund": booking.points_cost},
                changes=self.changes,
            )
        return result

    async def confirm(
        self,
        booking_id: int,
        host_id: int,
        *,
        operation_id: str | None = None,
    ) -> TransitionResult:
        """Host confirms an accepted booking. No ledger effect."""
        booking = await self.get_booking(booking_id)
        self._require_role(booking, host_id, "host")
        if self._is_replay(booking, BookingStatus.CONFIRMED, operation_id):
            return TransitionResult(booking, replayed=True)
        self._check_source(booking, BookingStatus.CONFIRMED)

        result = await self._transition(booking, BookingStatus.CONFIRMED, operation_id=operation_id)
        if not result.replayed:
            await create_notification(
                self.db, result.booking.guest_id, NotificationType.BOOKING_CONFIRMED,
                title="Booking confirmed",
                message="Your stay is confirmed.",
                data={"booking_id": booking_id},
                changes=self.changes,
            )
        return result

    async def cancel(
        self,
        booking_id: int,
        actor_id: int,
        cancelled_by: CancelledBy | str,
        *,
        operation_id: str | None = None,
    ) -> TransitionResult:
        """Guest or host cancels a non-terminal booking.

        The guest is always refunded. A host cancelling after acceptance is
        penalized and the guest receives a matching compensation.
        """
        try:
            side = CancelledBy(cancelled_by)
        except ValueError:
            raise ValidationError(f"Invalid cancelled_by: {cancelled_by}") from None
        if side is CancelledBy.SYSTEM:
            raise ValidationError("Only the deadline sweep cancels on behalf of the system")

        booking = await self.get_booking(booking_id)
        self._require_role(booking, actor_id, side.value)
        if self._is_replay(booking, BookingStatus.CANCELLED, operation_id):
            return TransitionResult(booking, replayed=True)
        self._check_source(booking, BookingStatus.CANCELLED)

        prior_status = booking.status
        result = await self._transition(
            booking, BookingStatus.CANCELLED, operation_id=operation_id, cancelled_by=side,
        )
        if result.replayed:
            return result
        booking = result.booking

        penalized = side is CancelledBy.HOST and prior_status in (
            BookingStatus.ACCEPTED, BookingStatus.CONFIRMED,
        )
        if penalized:
            penalty = booking.points_cost or self.settings.host_cancellation_default_penalty
            await debit(
                self.db, booking.host_id, penalty, TransactionType.PENALTY,
                f"Host cancellation of booking #{booking.id}",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:penalty",
                changes=self.changes,
            )
            await self._refund_guest(booking, penalty, "Compensation for host cancellation")
            await create_notification(
                self.db, booking.host_id, NotificationType.CANCELLATION_PENALTY,
                title="Cancellation penalty applied",
                message=f"Cancelling booking #{booking.id} cost you {penalty} points.",
                data={"booking_id": booking.id, "penalty": penalty},
                changes=self.changes,
            )
            await create_notification(
                self.db, booking.guest_id, NotificationType.BOOKING_CANCELLED,
                title="Booking cancelled by host",
                message=f"The host cancelled your booking. {penalty} points were credited to you.",
                data={"booking_id": booking.id, "refund": penalty, "cancelled_by": side.value},
                changes=self.changes,
            )
        else:
            await self._refund_guest(booking, booking.points_cost, "Refund for cancelled booking")
            recipient = booking.host_id if side is CancelledBy.GUEST else booking.guest_id
            await create_notification(
                self.db, recipient, NotificationType.BOOKING_CANCELLED,
                title="Booking cancelled",
                message=f"Booking #{booking.id} was cancelled by the {side.value}.",
                data={"booking_id": booking.id, "refund": booking.points_cost, "cancelled_by": side.value},
                changes=self.changes,
            )
        return result

    async def complete(
        self,
        booking_id: int,
        host_id: int,
        *,
        operation_id: str | None = None,
    ) -> TransitionResult:
        """Host marks a confirmed stay complete and is paid ``points_cost``."""
        booking = await self.get_booking(booking_id)
        self._require_role(booking, host_id, "host")
        if self._is_replay(booking, BookingStatus.COMPLETED, operation_id):
            return TransitionResult(booking, replayed=True)
        self._check_source(booking, BookingStatus.COMPLETED)

        result = await self._transition(booking, BookingStatus.COMPLETED, operation_id=operation_id)
        if result.replayed:
            return result
        booking = result.booking

        if booking.points_cost > 0:
            await credit(
                self.db, booking.host_id, booking.points_cost, TransactionType.BOOKING_EARNING,
                f"Earnings for booking #{booking.id}",
                booking_id=booking.id,
                idempotency_key=f"booking:{booking.id}:earning",
                changes=self.changes,
            )
        for user_id in (booking.guest_id, booking.host_id):
            await create_notification(
                self.db, user_id, NotificationType.BOOKING_COMPLETED,
                title="Stay completed",
                message=f"Booking #{booking.id} is complete.",
                data={"booking_id": booking.id, "points": booking.points_cost},
                changes=self.changes,
            )
        return result

    async def _refund_guest(self, booking: Booking, amount: int, description: str) -> None:
        if amount <= 0:
            return
        await credit(
            self.db, booking.guest_id, amount, TransactionType.BOOKING_REFUND,
            f"{description} #{booking.id}",
            booking_id=booking.id,
            idempotency_key=f"booking:{booking.id}:refund",
            changes=self.changes,
        )
