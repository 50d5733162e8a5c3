"""Booking conversations and messages.

One conversation per booking, created lazily on the first message. The
recipient's unread counter is bumped with an atomic SQL increment.
``(booking_id, client_id)`` is unique, so a client resending a message after
a lost response gets the stored row back instead of a duplicate.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.config import Settings, get_settings
from racestay.db.base import utcnow
from racestay.db.enums import NotificationType
from racestay.db.models import Booking, Conversation, Message
from racestay.errors import NotFoundError, UnauthorizedError, ValidationError
from racestay.notifications.service import create_notification
from racestay.realtime.changes import ChangeCollector

logger = logging.getLogger(__name__)


async def _get_party_booking(db: AsyncSession, booking_id: int, user_id: int) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
    if booking.party_role(user_id) is None:
        raise UnauthorizedError("You are not a party to this booking", booking_id=booking_id)
    return booking


async def _reload_conversation(db: AsyncSession, conversation_id: int) -> Conversation:
    result = await db.execute(
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_or_create_conversation(db: AsyncSession, booking: Booking) -> Conversation:
    """The booking's conversation; participant 1 is the guest."""
    result = await db.execute(select(Conversation).where(Conversation.booking_id == booking.id))
    conversation = result.scalar_one_or_none()
    if conversation is not None:
        return conversation

    now = utcnow()
    conversation = Conversation(
        booking_id=booking.id,
        participant_1_id=booking.guest_id,
        participant_2_id=booking.host_id,
        participant_1_unread=0,
        participant_2_unread=0,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(conversation)
    except IntegrityError:
        result = await db.execute(select(Conversation).where(Conversation.booking_id == booking.id))
        return result.scalar_one()
    return conversation


async def _find_by_client_id(db: AsyncSession, booking_id: int, client_id: str) -> Message | None:
    result = await db.execute(
        select(Message).where(Message.booking_id == booking_id, Message.client_id == client_id)
    )
    return result.scalar_one_or_none()


async def send_message(
    db: AsyncSession,
    booking_id: int,
    sender_id: int,
    text: str,
    *,
    client_id: str | None = None,
    changes: ChangeCollector | None = None,
    settings: Settings | None = None,
) -> Message:
    """Append a message to the booking conversation."""
    settings = settings or get_settings()
    body = (text or "").strip()
    if not body:
        raise ValidationError("Message cannot be empty")
    if len(body) > settings.max_message_length:
        raise ValidationError(
            f"Message exceeds {settings.max_message_length} characters",
            max_length=settings.max_message_length,
        )

    booking = await _get_party_booking(db, booking_id, sender_id)
    if client_id is not None:
        existing = await _find_by_client_id(db, booking_id, client_id)
        if existing is not None:
            return existing

    conversation = await get_or_create_conversation(db, booking)
    now = utcnow()
    message = Message(
        booking_id=booking_id,
        sender_id=sender_id,
        message=body,
        message_type="text",
        client_id=client_id,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(message)
    except IntegrityError:
        if client_id is None:
            raise
        existing = await _find_by_client_id(db, booking_id, client_id)
        if existing is None:
            raise
        return existing

    recipient_is_guest = sender_id == booking.host_id
    recipient_id = booking.guest_id if recipient_is_guest else booking.host_id
    counter = (
        {"participant_1_unread": Conversation.participant_1_unread + 1}
        if recipient_is_guest
        else {"participant_2_unread": Conversation.participant_2_unread + 1}
    )
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(last_message_at=now, updated_at=now, **counter)
        .execution_options(synchronize_session=False)
    )
    conversation = await _reload_conversation(db, conversation.id)

    if changes is not None:
        changes.message(message)
        changes.conversation(conversation)

    # Notify on the first unread message only.
    if conversation.unread_for(recipient_id) == 1:
        await create_notification(
            db, recipient_id, NotificationType.NEW_MESSAGE,
            title="New message",
            message=body[:140],
            data={"booking_id": booking_id, "message_id": message.id, "sender_id": sender_id},
            changes=changes,
        )

    logger.info("Message %d sent on booking %d by user %d", message.id, booking_id, sender_id)
    return message


async def get_messages(
    db: AsyncSession,
    booking_id: int,
    user_id: int,
    *,
    since: datetime | None = None,
    limit: int = 200,
) -> list[Message]:
    """Messages of a booking in send order; ``since`` narrows to rows touched after it."""
    await _get_party_booking(db, booking_id, user_id)
    query = select(Message).where(Message.booking_id == booking_id)
    if since is not None:
        query = query.where(Message.updated_at > since)
    result = await db.execute(query.order_by(Message.created_at.asc(), Message.id.asc()).limit(limit))
    return list(result.scalars().all())


async def get_conversations(db: AsyncSession, user_id: int) -> list[Conversation]:
    """User's conversations, most recently active first."""
    result = await db.execute(
        select(Conversation)
        .where((Conversation.participant_1_id == user_id) | (Conversation.participant_2_id == user_id))
        .order_by(
            func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
            Conversation.id.desc(),
        )
    )
    return list(result.scalars().all())


async def mark_conversation_read(
    db: AsyncSession,
    booking_id: int,
    user_id: int,
    changes: ChangeCollector | None = None,
) -> int:
    """Mark every message addressed to the user as read and zero their counter."""
    await _get_party_booking(db, booking_id, user_id)
    unread = await db.execute(
        select(Message.id).where(
            Message.booking_id == booking_id,
            Message.sender_id != user_id,
            Message.read_at.is_(None),
        )
    )
    ids = list(unread.scalars().all())

    now = utcnow()
    updated = 0
    if ids:
        result = await db.execute(
            update(Message)
            .where(Message.id.in_(ids), Message.read_at.is_(None))
            .values(read_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount

    conv_result = await db.execute(select(Conversation).where(Conversation.booking_id == booking_id))
    conversation = conv_result.scalar_one_or_none()
    if conversation is not None and conversation.unread_for(user_id):
        column = (
            "participant_1_unread" if user_id == conversation.participant_1_id else "participant_2_unread"
        )
        await db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(updated_at=now, **{column: 0})
            .execution_options(synchronize_session=False)
        )
        conversation = await _reload_conversation(db, conversation.id)
        if changes is not None:
            changes.conversation(conversation)

    if updated and changes is not None:
        refreshed = await db.execute(
            select(Message).where(Message.id.in_(ids)).execution_options(populate_existing=True)
        )
        for message in refreshed.scalars():
            changes.message(message, op="update")
    return updated


async def get_unread_message_count(db: AsyncSession, user_id: int) -> int:
    """Sum of the user's per-conversation unread counters."""
    result = await db.execute(
        select(
            func.coalesce(func.sum(case(
                (Conversation.participant_1_id == user_id, Conversation.participant_1_unread),
                (Conversation.participant_2_id == user_id, Conversation.participant_2_unread),
                else_=0,
            )), 0)
        )
    )
    return int(result.scalar_one())
