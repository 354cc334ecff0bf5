from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DeadLetterEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    workflow_id: str
    entity_type: Literal["user", "organization", "subscription"]
    entity_id: str
    error: str
    context: dict[str, Any] | None = None
    created_at: datetime
    retryable: bool
    retry_count: int
    last_retry_at: datetime | None = None
    resolved_at: datetime | None = None


class DeadLetterListResponse(BaseModel):
    entries: list[DeadLetterEntryOut]


class DeadLetterRetryResponse(BaseModel):
    id: int
    workflow_id: str


class DeadLetterRetryAllResponse(BaseModel):
    retried: int
    failed: int


class DeadLetterCleanupRequest(BaseModel):
    older_than_days: int = Field(default=30, ge=0)


class DeadLetterCleanupResponse(BaseModel):
    deleted: int


class SyncStatsResponse(BaseModel):
    total: int
    pending: int
    success: int
    failed: int
    unique_entities: int
    avg_duration_ms: int | None = None
    dead_letter_count: int
