"""Pydantic schemas for messaging endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SendMessageRequest(BaseModel):
    message: str = Field(..., max_length=4000)
    client_id: str | None = Field(None, max_length=64)


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    sender_id: int
    message: str
    message_type: str
    client_id: str | None = None
    read_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    participant_1_id: int
    participant_2_id: int
    last_message_at: datetime | None = None
    participant_1_unread: int
    participant_2_unread: int
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    conversations: list[ConversationResponse]


class UnreadMessagesResponse(BaseModel):
    unread_count: int
