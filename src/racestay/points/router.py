"""Points API endpoints: balance, history, summary and ledger check."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from racestay.auth.dependencies import get_current_user
from racestay.database import get_session
from racestay.db.enums import TransactionType
from racestay.db.models import User
from racestay.points.ledger import get_balance, get_points_summary, get_transaction_history, verify_ledger
from racestay.points.schemas import (
    BalanceResponse,
    PointsSummaryResponse,
    TransactionListResponse,
    TransactionResponse,
)

router = APIRouter(prefix="/api/v1/points", tags=["Points"])


@router.get("/balance", response_model=BalanceResponse)
async def balance(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    """Current balance, summed from the ledger."""
    return BalanceResponse(user_id=user.id, balance=await get_balance(db, user.id))


@router.get("/transactions", response_model=TransactionListResponse)
async def transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    type: TransactionType | None = Query(None),  # noqa: A002
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TransactionListResponse:
    """Ledger rows, most recent first."""
    rows, total = await get_transaction_history(db, user.id, limit=limit, offset=offset, type_=type)
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/summary", response_model=PointsSummaryResponse)
async def summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    return PointsSummaryResponse(**await get_points_summary(db, user.id))


@router.get("/verify")
async def verify(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, object]:
    """Recount the caller's ledger against the derived balance."""
    return await verify_ledger(db, user.id)
