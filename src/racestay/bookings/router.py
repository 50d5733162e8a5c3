"""Booking API endpoints: request, lifecycle transitions, reads and sweep."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.auth.dependencies import get_current_user
from racestay.bookings.deadlines import DeadlineScheduler
from racestay.bookings.schemas import (
    BookingListResponse,
    BookingRequest,
    BookingResponse,
    BookingStatsResponse,
    CancelRequest,
    OperationRequest,
    RespondRequest,
    SweepResponse,
    TransitionResponse,
)
from racestay.bookings.service import get_booking_for_user, get_booking_stats, get_bookings_for_user
from racestay.bookings.state_machine import BookingStateMachine, TransitionResult
from racestay.database import get_session
from racestay.db.enums import BookingStatus
from racestay.db.models import User
from racestay.dependencies import get_redis_dep
from racestay.realtime.publisher import commit_and_publish

router = APIRouter(prefix="/api/v1/bookings", tags=["Bookings"])


def _to_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        booking=BookingResponse.model_validate(result.booking),
        replayed=result.replayed,
    )


@router.post("", response_model=TransitionResponse, status_code=201)
async def create_booking(
    body: BookingRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> TransitionResponse:
    """Request a stay. The points cost is reserved immediately."""
    machine = BookingStateMachine(db)
    result = await machine.request_booking(
        user.id,
        host_id=body.host_id,
        race_id=body.race_id,
        property_id=body.property_id,
        check_in_date=body.check_in_date,
        check_out_date=body.check_out_date,
        guests_count=body.guests_count,
        points_cost=body.points_cost,
        request_message=body.request_message,
        operation_id=body.operation_id,
    )
    await commit_and_publish(db, redis, machine.changes)
    return _to_response(result)


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status: BookingStatus | None = Query(None),
    role: Literal["guest", "host"] | None = Query(None),
    date_range: Literal["upcoming", "past", "current"] | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BookingListResponse:
    """Bookings where the caller is guest or host."""
    bookings, total = await get_bookings_for_user(
        db, user.id, status=status, role=role, date_range=date_range, limit=limit, offset=offset,
    )
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
    )


@router.get("/stats", response_model=BookingStatsResponse)
async def booking_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BookingStatsResponse:
    """Booking counts, points flow and acceptance rate."""
    return BookingStatsResponse(**await get_booking_stats(db, user.id))


@router.post("/expire-overdue", response_model=SweepResponse)
async def expire_overdue(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> SweepResponse:
    """Run the deadline sweep over the caller's own overdue bookings."""
    outcome = await DeadlineScheduler().sweep(db, redis, user_id=user.id)
    return SweepResponse(expired=outcome.expired, skipped=outcome.skipped)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BookingResponse:
    """A single booking the caller is a party to."""
    return BookingResponse.model_validate(await get_booking_for_user(db, booking_id, user.id))


@router.post("/{booking_id}/respond", response_model=TransitionResponse)
async def respond_to_booking(
    booking_id: int,
    body: RespondRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> TransitionResponse:
    """Host accepts or rejects a pending request."""
    machine = BookingStateMachine(db)
    result = await machine.respond(
        booking_id, user.id, body.response, body.message, operation_id=body.operation_id,
    )
    await commit_and_publish(db, redis, machine.changes)
    return _to_response(result)


@router.post("/{booking_id}/confirm", response_model=TransitionResponse)
async def confirm_booking(
    booking_id: int,
    body: OperationRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> TransitionResponse:
    """Host confirms an accepted booking."""
    machine = BookingStateMachine(db)
    result = await machine.confirm(
        booking_id, user.id, operation_id=body.operation_id if body else None,
    )
    await commit_and_publish(db, redis, machine.changes)
    return _to_response(result)


@router.post("/{booking_id}/cancel", response_model=TransitionResponse)
async def cancel_booking(
    booking_id: int,
    body: CancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> TransitionResponse:
    """Guest or host cancels a booking that has not reached a terminal state."""
    machine = BookingStateMachine(db)
    result = await machine.cancel(
        booking_id, user.id, body.cancelled_by, operation_id=body.operation_id,
    )
    await commit_and_publish(db, redis, machine.changes)
    return _to_response(result)


@router.post("/{booking_id}/complete", response_model=TransitionResponse)
async def complete_booking(
    booking_id: int,
    body: OperationRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> TransitionResponse:
    """Host completes a confirmed stay and is paid."""
    machine = BookingStateMachine(db)
    result = await machine.complete(
        booking_id, user.id, operation_id=body.operation_id if body else None,
    )
    await commit_and_publish(db, redis, machine.changes)
    return _to_response(result)
