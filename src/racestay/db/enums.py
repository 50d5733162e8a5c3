"""Closed value sets stored in string columns."""

from __future__ import annotations

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancelledBy(str, enum.Enum):
    GUEST = "guest"
    HOST = "host"
    SYSTEM = "system"


class TransactionType(str, enum.Enum):
    SUBSCRIPTION_BONUS = "subscription_bonus"
    BOOKING_EARNING = "booking_earning"
    BOOKING_PAYMENT = "booking_payment"
    BOOKING_REFUND = "booking_refund"
    PENALTY = "penalty"
    COMPENSATION = "compensation"
    PROPERTY_BONUS = "property_bonus"
    RACE_BONUS = "race_bonus"
    REVIEW_BONUS = "review_bonus"


class NotificationType(str, enum.Enum):
    BOOKING_REQUEST_RECEIVED = "booking_request_received"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_EXPIRED = "booking_expired"
    CANCELLATION_PENALTY = "cancellation_penalty"
    DEADLINE_REMINDER = "deadline_reminder"
    POINTS_AWARDED = "points_awarded"
    NEW_MESSAGE = "new_message"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (not member names)."""
    return [member.value for member in enum_cls]
