"""Messaging API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.auth.dependencies import get_current_user
from racestay.database import get_session
from racestay.db.models import User
from racestay.dependencies import get_redis_dep
from racestay.messaging.schemas import (
    ConversationListResponse,
    ConversationResponse,
    MessageListResponse,
    MessageResponse,
    SendMessageRequest,
    UnreadMessagesResponse,
)
from racestay.messaging.service import (
    get_conversations,
    get_messages,
    get_unread_message_count,
    mark_conversation_read,
    send_message,
)
from racestay.notifications.schemas import MarkReadResponse
from racestay.realtime.changes import ChangeCollector
from racestay.realtime.publisher import commit_and_publish

router = APIRouter(prefix="/api/v1", tags=["Messaging"])


@router.post("/bookings/{booking_id}/messages", response_model=MessageResponse, status_code=201)
async def post_message(
    booking_id: int,
    body: SendMessageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> MessageResponse:
    """Send a message. Resending the same ``client_id`` returns the stored message."""
    changes = ChangeCollector()
    message = await send_message(
        db, booking_id, user.id, body.message, client_id=body.client_id, changes=changes,
    )
    await commit_and_publish(db, redis, changes)
    return MessageResponse.model_validate(message)


@router.get("/bookings/{booking_id}/messages", response_model=MessageListResponse)
async def list_messages(
    booking_id: int,
    since: datetime | None = Query(None),
    limit: int = Query(200, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> MessageListResponse:
    messages = await get_messages(db, booking_id, user.id, since=since, limit=limit)
    return MessageListResponse(messages=[MessageResponse.model_validate(m) for m in messages])


@router.post("/bookings/{booking_id}/messages/read", response_model=MarkReadResponse)
async def read_conversation(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> MarkReadResponse:
    """Mark every message addressed to the caller on this booking as read."""
    changes = ChangeCollector()
    updated = await mark_conversation_read(db, booking_id, user.id, changes)
    await commit_and_publish(db, redis, changes)
    return MarkReadResponse(updated=updated)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> ConversationListResponse:
    conversations = await get_conversations(db, user.id)
    return ConversationListResponse(
        conversations=[ConversationResponse.model_validate(c) for c in conversations],
    )


@router.get("/messages/unread-count", response_model=UnreadMessagesResponse)
async def unread_messages(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> UnreadMessagesResponse:
    return UnreadMessagesResponse(unread_count=await get_unread_message_count(db, user.id))
