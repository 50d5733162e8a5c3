"""Notification API endpoints, 4 routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.auth.dependencies import get_current_user
from racestay.database import get_session
from racestay.db.models import User
from racestay.dependencies import get_redis_dep
from racestay.errors import NotFoundError
from racestay.notifications.schemas import (
    MarkReadResponse,
    NotificationListResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from racestay.notifications.service import (
    get_notifications,
    get_unread_count,
    mark_all_as_read,
    mark_as_read,
)
from racestay.realtime.changes import ChangeCollector
from racestay.realtime.publisher import commit_and_publish

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> NotificationListResponse:
    """List user's notifications (paginated)."""
    notifications, total = await get_notifications(db, user.id, page, per_page, unread_only)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("/notifications/{notification_id}/read", response_model=MarkReadResponse)
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> MarkReadResponse:
    """Mark a notification as read."""
    changes = ChangeCollector()
    found = await mark_as_read(db, user.id, notification_id, changes)
    if not found:
        raise NotFoundError("Notification not found", notification_id=notification_id)
    updated = len(changes)
    await commit_and_publish(db, redis, changes)
    return MarkReadResponse(updated=updated)


@router.post("/notifications/read-all", response_model=MarkReadResponse)
async def mark_all_read(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_redis_dep),
) -> MarkReadResponse:
    """Mark all notifications as read."""
    changes = ChangeCollector()
    count = await mark_all_as_read(db, user.id, changes)
    await commit_and_publish(db, redis, changes)
    return MarkReadResponse(updated=count)


@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> UnreadCountResponse:
    """Count of unread notifications."""
    return UnreadCountResponse(unread_count=await get_unread_count(db, user.id))
