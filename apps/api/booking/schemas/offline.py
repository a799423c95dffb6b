"""Offline queue schemas - client-held intents and reconciliation reports."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking.db.enums import QueueItemStatus, QueueItemType
from booking.schemas.appointment import AppointmentRead


class QueueItem(BaseModel):
    """
    One locally captured intent.

    Payload by type:
    - create_hold: AppointmentCreate fields, optional `hold_expires_at`
    - reschedule: `starts_at`, `ends_at`, optional `reason`
    - cancel: optional `reason`
    - undo: `undo_event_id`, optional `reason`

    `target_local_id` points at an earlier create_hold in the same queue
    when the server id of the appointment is not known yet.
    """
    model_config = ConfigDict(from_attributes=True)

    local_id: str = Field(..., min_length=1, max_length=64)
    device_id: str = Field(..., min_length=1, max_length=128)
    type: QueueItemType
    appointment_id: UUID | None = None
    target_local_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    expected_version: int | None = Field(None, ge=1)
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    status: QueueItemStatus = QueueItemStatus.QUEUED
    retry_count: int = Field(0, ge=0)
    created_at: datetime
    last_error: str | None = None

    @field_validator("created_at")
    @classmethod
    def require_offset(cls, value: datetime) -> datetime:
        """Capture times order the queue, so they must be comparable instants."""
        if value.tzinfo is None:
            raise ValueError("created_at must include a UTC offset")
        return value


class ItemOutcome(BaseModel):
    """Result of replaying one queue item."""
    local_id: str
    type: QueueItemType
    status: QueueItemStatus
    retry_count: int = 0
    appointment_id: UUID | None = None
    appointment: AppointmentRead | None = None
    error: dict[str, Any] | None = None


class ReconcileRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=128)
    items: list[QueueItem]


class ReconcileReport(BaseModel):
    """Per-item outcomes of one pass, as three disjoint sets."""
    device_id: str
    confirmed: list[ItemOutcome] = Field(default_factory=list)
    conflict: list[ItemOutcome] = Field(default_factory=list)
    failed: list[ItemOutcome] = Field(default_factory=list)

    def outcomes(self) -> list[ItemOutcome]:
        return [*self.confirmed, *self.conflict, *self.failed]
