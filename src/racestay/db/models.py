"""ORM models for bookings, the points ledger, messaging and notifications.

Race and property catalogs live in external services; their ids are stored
here without foreign keys.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from racestay.db.base import Base, BigIntPK, JSONType, UTCDateTime, utcnow
from racestay.db.enums import (
    BookingStatus,
    CancelledBy,
    NotificationType,
    TransactionType,
    enum_values,
)

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """Identity row. Authentication data lives with the identity provider."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Optimistic version guarding voluntary spends against the ledger sum.
    points_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Booking(Base):
    """A stay request from a guest to a host for one race."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("points_cost >= 0", name="ck_bookings_points_cost_non_negative"),
        CheckConstraint("guests_count > 0", name="ck_bookings_guests_count_positive"),
        CheckConstraint("check_out_date > check_in_date", name="ck_bookings_dates_ordered"),
        Index("ix_bookings_status_deadline", "status", "host_response_deadline"),
        Index("ix_bookings_guest_id", "guest_id"),
        Index("ix_bookings_host_id", "host_id"),
        UniqueConstraint("guest_id", "request_operation_id", name="uq_bookings_guest_request_operation"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    guest_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    host_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    race_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    property_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, native_enum=False, length=16, values_callable=enum_values),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    check_in_date: Mapped[date] = mapped_column(Date, nullable=False)
    check_out_date: Mapped[date] = mapped_column(Date, nullable=False)
    guests_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    points_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    request_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    host_response_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    host_response_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_by: Mapped[CancelledBy | None] = mapped_column(
        Enum(CancelledBy, native_enum=False, length=16, values_callable=enum_values),
        nullable=True,
    )
    reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Set once by the request; later transitions only move last_operation_id.
    request_operation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_operation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def party_role(self, user_id: int) -> str | None:
        """Return 'guest', 'host' or None for a non-party."""
        if user_id == self.guest_id:
            return "guest"
        if user_id == self.host_id:
            return "host"
        return None


# ---------------------------------------------------------------------------
# Points ledger (append-only)
# ---------------------------------------------------------------------------


class PointsTransaction(Base):
    """One signed ledger entry. Rows are never updated or deleted."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_points_transactions_amount_non_zero"),
        Index("ix_points_transactions_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    booking_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("bookings.id"), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, native_enum=False, length=32, values_callable=enum_values),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(256), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class Conversation(Base):
    """One conversation per booking; participant 1 is the guest, 2 the host."""

    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), unique=True, nullable=False,
    )
    participant_1_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    participant_2_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    participant_1_unread: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    participant_2_unread: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def unread_for(self, user_id: int) -> int:
        if user_id == self.participant_1_id:
            return self.participant_1_unread
        if user_id == self.participant_2_id:
            return self.participant_2_unread
        return 0


class Message(Base):
    """A message inside a booking conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("booking_id", "client_id", name="uq_messages_booking_client_id"),
        Index("ix_messages_booking_created", "booking_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False,
    )
    sender_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted user notifications. Only ``read`` is ever mutated."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, native_enum=False, length=64, values_callable=enum_values),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
