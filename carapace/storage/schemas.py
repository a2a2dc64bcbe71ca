"""Pydantic DTOs returned by the message store."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SessionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str | None = None
    token_count: int = 0
    total_cost: float = 0.0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StoredMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_id: UUID
    role: str
    content: str
    position: int = 0
    token_count: int = 0
    cost: float = 0.0
    created_at: datetime | None = None
