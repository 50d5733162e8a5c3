"""Pydantic schemas for points endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from racestay.db.enums import TransactionType


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    booking_id: int | None = None
    amount: int
    type: TransactionType
    description: str
    created_at: datetime


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class BalanceResponse(BaseModel):
    user_id: int
    balance: int


class PointsSummaryResponse(BaseModel):
    current_balance: int
    total_earned: int
    total_spent: int
    total_penalties: int
