"""Booking read accessors and per-user statistics."""

from __future__ import annotations

from datetime import date
from typing import Literal

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.db.base import utcnow
from racestay.db.enums import BookingStatus, TransactionType
from racestay.db.models import Booking, PointsTransaction
from racestay.errors import NotFoundError, UnauthorizedError, ValidationError

Role = Literal["guest", "host"]
DateRange = Literal["upcoming", "past", "current"]

ACCEPTED_LIKE = (BookingStatus.ACCEPTED, BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


async def get_booking_for_user(db: AsyncSession, booking_id: int, user_id: int) -> Booking:
    """Fetch a booking the user is a party to."""
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
    if booking.party_role(user_id) is None:
        raise UnauthorizedError("You are not a party to this booking", booking_id=booking_id)
    return booking


async def get_bookings_for_user(
    db: AsyncSession,
    user_id: int,
    *,
    status: BookingStatus | None = None,
    role: Role | None = None,
    date_range: DateRange | None = None,
    today: date | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Booking], int]:
    """Bookings where the user is guest or host, newest first."""
    if role == "guest":
        filters = [Booking.guest_id == user_id]
    elif role == "host":
        filters = [Booking.host_id == user_id]
    elif role is None:
        filters = [or_(Booking.guest_id == user_id, Booking.host_id == user_id)]
    else:
        raise ValidationError(f"Invalid role: {role}")

    if status is not None:
        filters.append(Booking.status == status)

    today = today or utcnow().date()
    if date_range == "upcoming":
        filters.append(Booking.check_in_date > today)
    elif date_range == "past":
        filters.append(Booking.check_out_date < today)
    elif date_range == "current":
        filters.extend([Booking.check_in_date <= today, Booking.check_out_date >= today])
    elif date_range is not None:
        raise ValidationError(f"Invalid date range: {date_range}")

    total = (await db.execute(select(func.count()).select_from(Booking).where(*filters))).scalar_one()
    result = await db.execute(
        select(Booking)
        .where(*filters)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_booking_stats(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Booking counts, booking-related points flow and host acceptance rate."""
    party = or_(Booking.guest_id == user_id, Booking.host_id == user_id)
    counts = await db.execute(
        select(
            func.count(),
            func.coalesce(func.sum(case((Booking.status == BookingStatus.PENDING, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Booking.status == BookingStatus.COMPLETED, 1), else_=0)), 0),
        ).select_from(Booking).where(party)
    )
    total, pending, completed = counts.one()

    hosting = await db.execute(
        select(
            func.count(),
            func.coalesce(func.sum(case((Booking.status.in_(ACCEPTED_LIKE), 1), else_=0)), 0),
        ).select_from(Booking).where(Booking.host_id == user_id)
    )
    hosted, accepted = hosting.one()

    flows = await db.execute(
        select(
            func.coalesce(func.sum(case(
                (PointsTransaction.type == TransactionType.BOOKING_EARNING, PointsTransaction.amount),
                else_=0,
            )), 0),
            func.coalesce(func.sum(case(
                (PointsTransaction.type == TransactionType.BOOKING_PAYMENT, -PointsTransaction.amount),
                (PointsTransaction.type == TransactionType.BOOKING_REFUND, -PointsTransaction.amount),
                else_=0,
            )), 0),
        ).where(PointsTransaction.user_id == user_id)
    )
    earned, spent = flows.one()

    return {
        "total_bookings": int(total),
        "pending_requests": int(pending),
        "completed_bookings": int(completed),
        "total_points_earned": int(earned),
        "total_points_spent": max(0, int(spent)),
        "acceptance_rate": round(100 * int(accepted) / int(hosted)) if hosted else 0,
    }
