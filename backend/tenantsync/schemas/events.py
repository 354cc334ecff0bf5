from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class EventCursorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cursor: str | None = None
    last_polled_at: datetime | None = None
    last_processed_event_id: str | None = None
    updated_at: datetime | None = None


class CursorInitializeRequest(BaseModel):
    # ISO-8601 timestamp; omitted means "start of available history".
    range_start: str | None = None


class PollResultOut(BaseModel):
    processed: int
    skipped: int
    new_cursor: str | None = None
    errors: list[str]


class ProcessedEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    processed_at: datetime


class EventFailureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    source: str
    error_message: str | None = None
    attempts: int
    first_failed_at: datetime
    last_failed_at: datetime


class ProcessResultOut(BaseModel):
    success: bool
    skipped: bool
    error: str | None = None


class IdentityRefreshResponse(BaseModel):
    external_id: str
    local_id: int
    workflow_id: str


class RevokeSessionsResponse(BaseModel):
    external_id: str
    revoked: int
