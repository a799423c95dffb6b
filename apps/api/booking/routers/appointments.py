"""Appointments router - snapshot reads, event history and mutations.

Every mutation requires an Idempotency-Key header and an expected_version
(except create). Errors are raised as BookingError and rendered as error
envelopes by the application.
"""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from booking.core.deps import get_db, get_mutation_context, require_idempotency_key
from booking.core.errors import AppointmentNotFound
from booking.schemas.appointment import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentEventRead,
    AppointmentNotesUpdate,
    AppointmentRead,
    AppointmentReschedule,
    AppointmentUndo,
    AppointmentVersionedAction,
)
from booking.schemas.envelope import Envelope, ErrorEnvelope
from booking.services import appointment_service, undo_service
from booking.services.appointment_service import MutationContext

router = APIRouter(prefix="/v1/appointments", tags=["appointments"])

MUTATION_ERRORS = {
    400: {"model": ErrorEnvelope},
    404: {"model": ErrorEnvelope},
    409: {"model": ErrorEnvelope},
    503: {"model": ErrorEnvelope},
}


# =============================================================================
# Reads
# =============================================================================

@router.get("", response_model=Envelope[list[AppointmentRead]])
def list_appointments(
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
):
    """Live appointments starting on the given UTC day."""
    appointments = appointment_service.list_appointments(db, day)
    return Envelope(data=[AppointmentRead.model_validate(a) for a in appointments])


@router.get("/{appointment_id}", response_model=Envelope[AppointmentRead])
def get_appointment(
    appointment_id: UUID,
    include_deleted: bool = Query(False),
    db: Session = Depends(get_db),
):
    """Get appointment snapshot."""
    appointment = appointment_service.get_appointment(db, appointment_id, include_deleted)
    if appointment is None:
        raise AppointmentNotFound(appointment_id)
    return Envelope(data=AppointmentRead.model_validate(appointment))


@router.get("/{appointment_id}/events", response_model=Envelope[list[AppointmentEventRead]])
def list_events(
    appointment_id: UUID,
    db: Session = Depends(get_db),
):
    """Full event history, oldest first. Available for soft-deleted rows too."""
    if appointment_service.get_appointment(db, appointment_id, include_deleted=True) is None:
        raise AppointmentNotFound(appointment_id)
    events = appointment_service.list_events(db, appointment_id)
    return Envelope(data=[AppointmentEventRead.model_validate(e) for e in events])


# =============================================================================
# Mutations
# =============================================================================

@router.post(
    "",
    response_model=Envelope[AppointmentRead],
    status_code=201,
    responses=MUTATION_ERRORS,
)
def create_appointment(
    data: AppointmentCreate,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    """Create an appointment (version 1, `created` event)."""
    result = appointment_service.create_appointment(db, ctx, idempotency_key, data)
    return Envelope(data=result)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=Envelope[AppointmentRead],
    responses=MUTATION_ERRORS,
)
def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentReschedule,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    result = appointment_service.reschedule_appointment(
        db, ctx, idempotency_key, appointment_id,
        data.expected_version, data.starts_at, data.ends_at, data.reason,
    )
    return Envelope(data=result)


@router.post(
    "/{appointment_id}/cancel",
    response_model=Envelope[AppointmentRead],
    responses=MUTATION_ERRORS,
)
def cancel_appointment(
    appointment_id: UUID,
    data: AppointmentCancel,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    result = appointment_service.cancel_appointment(
        db, ctx, idempotency_key, appointment_id, data.expected_version, data.reason
    )
    return Envelope(data=result)


@router.post(
    "/{appointment_id}/undo",
    response_model=Envelope[AppointmentRead],
    responses=MUTATION_ERRORS,
)
def undo_event(
    appointment_id: UUID,
    data: AppointmentUndo,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    """Compensate a prior event. ALREADY_UNDONE means the target is already reversed."""
    result = undo_service.undo_event(
        db, ctx, idempotency_key, appointment_id,
        data.undo_event_id, data.expected_version, data.reason,
    )
    return Envelope(data=result)


@router.post(
    "/{appointment_id}/notes",
    response_model=Envelope[AppointmentRead],
    responses=MUTATION_ERRORS,
)
def update_notes(
    appointment_id: UUID,
    data: AppointmentNotesUpdate,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    result = appointment_service.update_notes(
        db, ctx, idempotency_key, appointment_id,
        data.expected_version, data.notes, data.reason,
    )
    return Envelope(data=result)


@router.post(
    "/{appointment_id}/delete",
    response_model=Envelope[AppointmentRead],
    responses=MUTATION_ERRORS,
)
def soft_delete_appointment(
    appointment_id: UUID,
    data: AppointmentVersionedAction,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    """Soft delete. The row stays readable with include_deleted=true."""
    result = appointment_service.soft_delete_appointment(
        db, ctx, idempotency_key, appointment_id, data.expected_version, data.reason
    )
    return Envelope(data=result)


@router.post(
    "/{appointment_id}/restore",
    response_model=Envelope[AppointmentRead],
    responses=MUTATION_ERRORS,
)
def restore_appointment(
    appointment_id: UUID,
    data: AppointmentVersionedAction,
    idempotency_key: str = Depends(require_idempotency_key),
    ctx: MutationContext = Depends(get_mutation_context),
    db: Session = Depends(get_db),
):
    result = appointment_service.restore_appointment(
        db, ctx, idempotency_key, appointment_id, data.expected_version, data.reason
    )
    return Envelope(data=result)
