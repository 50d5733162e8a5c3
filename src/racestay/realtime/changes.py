"""Change events produced by committed mutations.

Services record one :class:`ChangeEvent` per inserted or updated row into a
:class:`ChangeCollector`. The caller publishes the collected events only after
the owning transaction commits, so subscribers never see uncommitted rows.

Channel naming:
    feed:{table}:user:{user_id}          user-scoped feeds
    feed:messages:booking:{booking_id}   booking-scoped message feed
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from racestay.bookings.schemas import BookingResponse
from racestay.db.models import Booking, Conversation, Message, Notification, PointsTransaction
from racestay.messaging.schemas import ConversationResponse, MessageResponse
from racestay.notifications.schemas import NotificationResponse
from racestay.points.schemas import TransactionResponse

Operation = Literal["insert", "update"]

FEED_TABLES = frozenset({"bookings", "points", "notifications", "conversations", "messages"})


def user_channel(table: str, user_id: int) -> str:
    return f"feed:{table}:user:{user_id}"


def booking_channel(booking_id: int) -> str:
    return f"feed:messages:booking:{booking_id}"


@dataclass(frozen=True)
class ChangeEvent:
    """A single row-level change."""

    table: str
    op: Operation
    row: dict[str, Any]
    channels: tuple[str, ...]

    def payload(self) -> dict[str, Any]:
        return {"table": self.table, "op": self.op, "row": self.row}

    def to_json(self) -> str:
        return json.dumps(self.payload())


@dataclass
class ChangeCollector:
    """Accumulates change events for one unit of work."""

    events: list[ChangeEvent] = field(default_factory=list)

    def add(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def booking(self, booking: Booking, op: Operation = "update") -> None:
        row = BookingResponse.model_validate(booking).model_dump(mode="json")
        self.add(ChangeEvent(
            table="bookings",
            op=op,
            row=row,
            channels=(
                user_channel("bookings", booking.guest_id),
                user_channel("bookings", booking.host_id),
            ),
        ))

    def transaction(self, entry: PointsTransaction) -> None:
        row = TransactionResponse.model_validate(entry).model_dump(mode="json")
        self.add(ChangeEvent(
            table="points",
            op="insert",
            row=row,
            channels=(user_channel("points", entry.user_id),),
        ))

    def notification(self, notification: Notification, op: Operation = "insert") -> None:
        row = NotificationResponse.model_validate(notification).model_dump(mode="json")
        self.add(ChangeEvent(
            table="notifications",
            op=op,
            row=row,
            channels=(user_channel("notifications", notification.user_id),),
        ))

    def conversation(self, conversation: Conversation, op: Operation = "update") -> None:
        row = ConversationResponse.model_validate(conversation).model_dump(mode="json")
        self.add(ChangeEvent(
            table="conversations",
            op=op,
            row=row,
            channels=(
                user_channel("conversations", conversation.participant_1_id),
                user_channel("conversations", conversation.participant_2_id),
            ),
        ))

    def message(self, message: Message, op: Operation = "insert") -> None:
        row = MessageResponse.model_validate(message).model_dump(mode="json")
        self.add(ChangeEvent(
            table="messages",
            op=op,
            row=row,
            channels=(booking_channel(message.booking_id),),
        ))

    def drain(self) -> list[ChangeEvent]:
        events, self.events = self.events, []
        return events

    def __len__(self) -> int:
        return len(self.events)
