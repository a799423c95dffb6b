"""Appointment schemas - Pydantic models for appointments API."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Requests
# =============================================================================

class AppointmentCreate(BaseModel):
    """Schema for creating an appointment."""
    client_name: str = Field(..., min_length=1, max_length=255)
    client_phone: str | None = Field(None, max_length=40)
    service_name: str = Field(..., min_length=1, max_length=255)
    starts_at: datetime
    ends_at: datetime
    notes: str | None = None


class AppointmentReschedule(BaseModel):
    """Schema for rescheduling an appointment."""
    expected_version: int = Field(..., ge=1)
    starts_at: datetime
    ends_at: datetime
    reason: str | None = Field(None, max_length=500)


class AppointmentCancel(BaseModel):
    """Schema for cancelling an appointment."""
    expected_version: int = Field(..., ge=1)
    reason: str | None = Field(None, max_length=500)


class AppointmentUndo(BaseModel):
    """Schema for undoing a prior event."""
    undo_event_id: UUID
    expected_version: int = Field(..., ge=1)
    reason: str | None = Field(None, max_length=500)


class AppointmentNotesUpdate(BaseModel):
    expected_version: int = Field(..., ge=1)
    notes: str | None = None
    reason: str | None = Field(None, max_length=500)


class AppointmentVersionedAction(BaseModel):
    """Soft delete / restore."""
    expected_version: int = Field(..., ge=1)
    reason: str | None = Field(None, max_length=500)


# =============================================================================
# Responses
# =============================================================================

class AppointmentRead(BaseModel):
    """Schema for reading an appointment snapshot."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_name: str
    client_phone: str | None
    service_name: str
    starts_at: datetime
    ends_at: datetime
    status: str
    notes: str | None
    version: int
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class AppointmentEventRead(BaseModel):
    """Schema for reading one event of the append-only log."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    appointment_id: UUID
    event_type: str
    actor_type: str
    actor_id: str | None
    reason: str | None
    payload: dict[str, Any]
    appointment_version: int
    undone_event_id: UUID | None
    superseded_by_event_id: UUID | None
    created_at: datetime


class SystemModeRead(BaseModel):
    status: str
    checks: dict[str, str]
    details: dict[str, str] = Field(default_factory=dict)
    updated_at: datetime | None
