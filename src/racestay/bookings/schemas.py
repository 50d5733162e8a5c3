"""Pydantic schemas for booking endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from racestay.db.enums import BookingStatus, CancelledBy


class BookingRequest(BaseModel):
    host_id: int
    race_id: int
    property_id: int
    check_in_date: date
    check_out_date: date
    guests_count: int = Field(1, ge=1, le=20)
    points_cost: int = Field(..., ge=0)
    request_message: str | None = Field(None, max_length=2000)
    operation_id: str | None = Field(None, max_length=64)


class RespondRequest(BaseModel):
    response: Literal["accepted", "rejected"]
    message: str | None = Field(None, max_length=2000)
    operation_id: str | None = Field(None, max_length=64)


class CancelRequest(BaseModel):
    cancelled_by: Literal["guest", "host"]
    operation_id: str | None = Field(None, max_length=64)


class OperationRequest(BaseModel):
    operation_id: str | None = Field(None, max_length=64)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    guest_id: int
    host_id: int
    race_id: int
    property_id: int
    status: BookingStatus
    check_in_date: date
    check_out_date: date
    guests_count: int
    points_cost: int
    request_message: str | None = None
    host_response_message: str | None = None
    host_response_deadline: datetime
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: CancelledBy | None = None
    last_operation_id: str | None = None
    created_at: datetime
    updated_at: datetime


class TransitionResponse(BaseModel):
    booking: BookingResponse
    replayed: bool = False


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int


class BookingStatsResponse(BaseModel):
    total_bookings: int
    pending_requests: int
    completed_bookings: int
    total_points_earned: int
    total_points_spent: int
    acceptance_rate: int


class SweepResponse(BaseModel):
    expired: int
    skipped: int
