"""Shared Pydantic schemas for audit, announcements, blocks and the change feed."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Body returned for engine errors."""

    error: str = Field(..., description="Stable error kind, e.g. 'duplicate'")
    detail: str


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: str
    action: str
    details: dict[str, Any]
    created_at: int


class ErrorLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message: str
    category: str
    severity: str
    context: dict[str, Any]
    created_at: int


class AnnouncementCreate(BaseModel):
    message: str = Field(..., description="Cast text, at most 320 characters")
    embeds: list[str] = Field(default_factory=list)


class AnnouncementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    cast_hash: str | None = None
    error: str | None = None
    attempts: int = 0


class BlockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    height: int
    block_hash: str
    tx_count: int
    timestamp: int | None = None


class ChangeEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    position: int
    table_name: str
    row_id: str
    row_version: int
    operation: str
    payload: dict[str, Any]
    created_at: int


class ChangeBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cursor: int
    events: list[ChangeEventResponse]
