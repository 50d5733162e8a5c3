"""Notification creation and read-state service.

Notifications are:
1. Persisted in the database
2. Recorded as change events and pushed to the user's notification feed
   after the owning transaction commits

The unread count is always derived with a COUNT query, never stored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.db.base import utcnow
from racestay.db.enums import NotificationType
from racestay.db.models import Notification
from racestay.realtime.changes import ChangeCollector

logger = logging.getLogger(__name__)


async def create_notification(
    db: AsyncSession,
    user_id: int,
    type_: NotificationType,
    title: str,
    message: str | None = None,
    data: dict[str, Any] | None = None,
    changes: ChangeCollector | None = None,
) -> Notification:
    """Create a notification inside the caller's transaction."""
    if not isinstance(type_, NotificationType):
        raise ValueError(f"Invalid notification type: {type_}")

    now = utcnow()
    notification = Notification(
        user_id=user_id,
        type=type_,
        title=title,
        message=message,
        read=False,
        data=data or {},
        created_at=now,
        updated_at=now,
    )
    db.add(notification)
    await db.flush()

    if changes is not None:
        changes.notification(notification, op="insert")
    return notification


async def get_notifications(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 20,
    unread_only: bool = False,
) -> tuple[list[Notification], int]:
    """Get user's notifications (paginated, most recent first)."""
    offset = (page - 1) * per_page
    filters = [Notification.user_id == user_id]
    if unread_only:
        filters.append(Notification.read.is_(False))

    total_result = await db.execute(
        select(func.count()).select_from(Notification).where(*filters)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(per_page)
    )
    return list(result.scalars().all()), total


async def mark_as_read(
    db: AsyncSession,
    user_id: int,
    notification_id: int,
    changes: ChangeCollector | None = None,
) -> bool:
    """Mark a single notification as read. Returns True if it exists for the user.

    Marking an already-read notification is a no-op that still reports found.
    """
    exists = await db.execute(
        select(Notification.id).where(
            Notification.id == notification_id, Notification.user_id == user_id,
        )
    )
    if exists.scalar_one_or_none() is None:
        return False

    result = await db.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
        .values(read=True, updated_at=utcnow())
    )
    await db.flush()

    if result.rowcount and changes is not None:
        refreshed = await db.execute(
            select(Notification)
            .where(Notification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        changes.notification(refreshed.scalar_one(), op="update")
    return True


async def mark_all_as_read(
    db: AsyncSession,
    user_id: int,
    changes: ChangeCollector | None = None,
) -> int:
    """Mark all unread notifications as read. Returns count updated."""
    unread = await db.execute(
        select(Notification.id).where(
            Notification.user_id == user_id, Notification.read.is_(False),
        )
    )
    ids = list(unread.scalars().all())
    if not ids:
        return 0

    result = await db.execute(
        update(Notification)
        .where(Notification.id.in_(ids), Notification.read.is_(False))
        .values(read=True, updated_at=utcnow())
    )
    await db.flush()

    if changes is not None:
        refreshed = await db.execute(
            select(Notification)
            .where(Notification.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        for notification in refreshed.scalars():
            changes.notification(notification, op="update")
    return result.rowcount


async def get_unread_count(db: AsyncSession, user_id: int) -> int:
    """Get count of unread notifications."""
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
    )
    return result.scalar_one()


async def prune_read_notifications(db: AsyncSession, older_than: datetime) -> int:
    """Delete read notifications created before the cutoff. Unread ones are kept."""
    result = await db.execute(
        delete(Notification).where(
            Notification.read.is_(True),
            Notification.created_at < older_than,
        )
    )
    await db.flush()
    if result.rowcount:
        logger.info("Pruned %d read notifications older than %s", result.rowcount, older_than.isoformat())
    return result.rowcount
