"""Points ledger: append-only transactions with a derived balance.

The transaction log is the single source of truth. A balance is always the
sum of a user's rows; nothing caches or maintains it separately.

Voluntary spends pass through a gate that re-reads the freshest sum and
claims the user's ``points_version`` with a conditional update, so two
concurrent spends cannot both pass against the same balance. Penalties skip
the gate and may drive a balance negative.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.config import Settings, get_settings
from racestay.db.enums import NotificationType, TransactionType
from racestay.db.models import PointsTransaction, User
from racestay.errors import ConflictError, InsufficientPointsError, NotFoundError, ValidationError
from racestay.notifications.service import create_notification
from racestay.realtime.changes import ChangeCollector

logger = logging.getLogger(__name__)

BONUS_TYPES = frozenset({
    TransactionType.SUBSCRIPTION_BONUS,
    TransactionType.PROPERTY_BONUS,
    TransactionType.RACE_BONUS,
    TransactionType.REVIEW_BONUS,
})


def bonus_amount(type_: TransactionType, settings: Settings | None = None) -> int:
    """Configured credit for a reputation bonus."""
    settings = settings or get_settings()
    amounts = {
        TransactionType.SUBSCRIPTION_BONUS: settings.subscription_bonus_points,
        TransactionType.PROPERTY_BONUS: settings.property_bonus_points,
        TransactionType.RACE_BONUS: settings.race_bonus_points,
        TransactionType.REVIEW_BONUS: settings.review_bonus_points,
    }
    if type_ not in amounts:
        raise ValidationError(f"{type_.value} is not a bonus type")
    return amounts[type_]


async def get_balance(db: AsyncSession, user_id: int) -> int:
    """Sum of every ledger row for the user."""
    result = await db.execute(
        select(func.coalesce(func.sum(PointsTransaction.amount), 0))
        .where(PointsTransaction.user_id == user_id)
    )
    return int(result.scalar_one())


async def _append(
    db: AsyncSession,
    *,
    user_id: int,
    amount: int,
    type_: TransactionType,
    description: str,
    booking_id: int | None,
    idempotency_key: str | None,
    changes: ChangeCollector | None,
) -> PointsTransaction | None:
    """Insert one ledger row. Returns None if the idempotency key already exists."""
    if idempotency_key is not None:
        existing = await db.execute(
            select(PointsTransaction.id).where(PointsTransaction.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("Ledger entry %s already applied, skipping", idempotency_key)
            return None

    entry = PointsTransaction(
        user_id=user_id,
        booking_id=booking_id,
        amount=amount,
        type=type_,
        description=description,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    await db.flush()

    if changes is not None:
        changes.transaction(entry)
    logger.info(
        "Ledger %s %+d for user %d (booking=%s)",
        type_.value, amount, user_id, booking_id,
    )
    return entry


async def _claim_spend(db: AsyncSession, user_id: int, amount: int) -> None:
    """Validate a voluntary spend against the freshest balance and claim the gate."""
    result = await db.execute(select(User.points_version).where(User.id == user_id))
    version = result.scalar_one_or_none()
    if version is None:
        raise NotFoundError(f"User {user_id} not found")

    balance = await get_balance(db, user_id)
    if balance < amount:
        raise InsufficientPointsError(
            f"Insufficient points. Current: {balance}, Required: {amount}",
            balance=balance,
            required=amount,
        )

    claimed = await db.execute(
        update(User)
        .where(User.id == user_id, User.points_version == version)
        .values(points_version=version + 1)
    )
    if claimed.rowcount == 0:
        raise ConflictError("Points balance changed concurrently, retry the operation")


async def credit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    type_: TransactionType,
    description: str,
    *,
    booking_id: int | None = None,
    idempotency_key: str | None = None,
    changes: ChangeCollector | None = None,
) -> PointsTransaction | None:
    """Append a positive ledger row."""
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")
    return await _append(
        db,
        user_id=user_id,
        amount=amount,
        type_=type_,
        description=description,
        booking_id=booking_id,
        idempotency_key=idempotency_key,
        changes=changes,
    )


async def debit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    type_: TransactionType,
    description: str,
    *,
    booking_id: int | None = None,
    idempotency_key: str | None = None,
    changes: ChangeCollector | None = None,
) -> PointsTransaction | None:
    """Append a negative ledger row.

    Everything except a penalty is a voluntary spend and must be covered by
    the current balance.
    """
    if amount <= 0:
        raise ValidationError("Debit amount must be positive")
    if type_ is not TransactionType.PENALTY:
        await _claim_spend(db, user_id, amount)
    return await _append(
        db,
        user_id=user_id,
        amount=-amount,
        type_=type_,
        description=description,
        booking_id=booking_id,
        idempotency_key=idempotency_key,
        changes=changes,
    )


async def get_transaction_history(
    db: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    type_: TransactionType | None = None,
) -> tuple[list[PointsTransaction], int]:
    """User's ledger rows, most recent first."""
    query = select(PointsTransaction).where(PointsTransaction.user_id == user_id)
    count_query = select(func.count()).select_from(PointsTransaction).where(
        PointsTransaction.user_id == user_id
    )
    if type_ is not None:
        query = query.where(PointsTransaction.type == type_)
        count_query = count_query.where(PointsTransaction.type == type_)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_points_summary(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Balance plus earned / spent / penalty totals, all derived from the log."""
    is_penalty = PointsTransaction.type == TransactionType.PENALTY
    result = await db.execute(
        select(
            func.coalesce(func.sum(PointsTransaction.amount), 0),
            func.coalesce(func.sum(case((PointsTransaction.amount > 0, PointsTransaction.amount), else_=0)), 0),
            func.coalesce(
                func.sum(case(((PointsTransaction.amount < 0) & ~is_penalty, -PointsTransaction.amount), else_=0)),
                0,
            ),
            func.coalesce(func.sum(case(((PointsTransaction.amount < 0) & is_penalty, -PointsTransaction.amount), else_=0)), 0),
        ).where(PointsTransaction.user_id == user_id)
    )
    balance, earned, spent, penalties = result.one()
    return {
        "current_balance": int(balance),
        "total_earned": int(earned),
        "total_spent": int(spent),
        "total_penalties": int(penalties),
    }


async def award_bonus(
    db: AsyncSession,
    user_id: int,
    type_: TransactionType,
    reference: str,
    *,
    changes: ChangeCollector | None = None,
    settings: Settings | None = None,
) -> PointsTransaction | None:
    """Credit a reputation bonus once per (type, user, reference).

    Returns None when the bonus was already granted.
    """
    if type_ not in BONUS_TYPES:
        raise ValidationError(f"{type_.value} is not a bonus type")
    amount = bonus_amount(type_, settings)
    entry = await credit(
        db,
        user_id,
        amount,
        type_,
        f"{type_.value.replace('_', ' ').capitalize()}: {reference}",
        idempotency_key=f"bonus:{type_.value}:{user_id}:{reference}",
        changes=changes,
    )
    if entry is not None:
        await create_notification(
            db,
            user_id,
            NotificationType.POINTS_AWARDED,
            title=f"You earned {amount} points",
            message=entry.description,
            data={"transaction_id": entry.id, "amount": amount, "type": type_.value},
            changes=changes,
        )
    return entry


async def verify_ledger(db: AsyncSession, user_id: int) -> dict[str, Any]:
    """Cross-check the derived balance against a row-by-row recount."""
    result = await db.execute(
        select(PointsTransaction.amount).where(PointsTransaction.user_id == user_id)
    )
    recount = sum(result.scalars().all())
    balance = await get_balance(db, user_id)
    return {"user_id": user_id, "balance": balance, "recount": recount, "consistent": balance == recount}
