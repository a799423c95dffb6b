"""
Undo via compensating events.

Undo never rewrites history: it appends a new `undo_applied` event whose
change reverses the target event's recorded before/after, and marks the
target as superseded exactly once. Undoing an undo is just another undo whose
target is the earlier compensation event.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from booking.core.errors import AlreadyUndone, AppointmentNotFound, ValidationError
from booking.db.enums import EventType
from booking.db.models import Appointment, AppointmentEvent
from booking.schemas.appointment import AppointmentRead
from booking.services import appointment_service
from booking.services.appointment_service import MutationContext

logger = logging.getLogger(__name__)


def compute_compensation(event: AppointmentEvent, now: datetime) -> dict[str, Any]:
    """
    Changes that reverse `event`.

    Every field that differs between the event's before and after snapshots
    goes back to its before value. A `created` event has no before snapshot;
    it is compensated by soft-deleting the appointment.
    """
    payload = event.payload or {}
    before = payload.get("before")
    after = payload.get("after") or {}

    if before is None:
        if event.event_type != EventType.CREATED.value:
            raise ValidationError("Event has no recorded prior state to restore.")
        return {"deleted_at": now}

    changes: dict[str, Any] = {}
    for name in appointment_service.SNAPSHOT_FIELDS:
        if before.get(name) != after.get(name):
            changes[name] = appointment_service.parse_snapshot_value(name, before.get(name))

    if not changes:
        raise ValidationError("Event did not change any field; nothing to undo.")
    return changes


def _mark_superseded(db: Session, target_id: UUID, compensation_id: UUID) -> bool:
    """Single-assignment compare-and-swap on superseded_by_event_id."""
    result = db.execute(
        update(AppointmentEvent)
        .where(AppointmentEvent.id == target_id)
        .where(AppointmentEvent.superseded_by_event_id.is_(None))
        .values(superseded_by_event_id=compensation_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _current_snapshot(db: Session, appointment_id: UUID) -> dict[str, Any] | None:
    appointment = db.get(Appointment, appointment_id, populate_existing=True)
    return appointment_service.to_read(appointment) if appointment is not None else None


def undo_event(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    appointment_id: UUID,
    target_event_id: UUID,
    expected_version: int,
    reason: str | None = None,
) -> AppointmentRead:
    """
    Compensate `target_event_id` on `appointment_id`.

    Raises:
        ValidationError if the target does not exist on this appointment
        AlreadyUndone if the target has already been compensated
        VersionConflict if the appointment moved past expected_version
    """

    def validate() -> None:
        if expected_version < 1:
            raise ValidationError("expected_version must be a positive integer.")

    def apply(now: datetime) -> Appointment:
        target = db.get(AppointmentEvent, target_event_id, populate_existing=True)
        if target is None or target.appointment_id != appointment_id:
            raise ValidationError(
                "Undo target event not found for appointment.",
                details={"undo_event_id": str(target_event_id)},
            )
        if target.superseded_by_event_id is not None:
            raise AlreadyUndone(
                target.id,
                target.superseded_by_event_id,
                _current_snapshot(db, appointment_id),
            )

        changes = compute_compensation(target, now)
        appointment = appointment_service.load_for_update(
            db, appointment_id, expected_version, deleted=None
        )
        if appointment.deleted_at is not None and "deleted_at" not in changes:
            raise AppointmentNotFound(appointment_id)
        if "deleted_at" in changes and changes["deleted_at"] is not None and appointment.deleted_at:
            raise ValidationError("Appointment is already deleted.")

        starts_at = changes.get("starts_at", appointment.starts_at)
        ends_at = changes.get("ends_at", appointment.ends_at)
        if ends_at <= starts_at:
            raise ValidationError("Undo would produce an invalid time window.")

        appointment, compensation = appointment_service.apply_change(
            db, ctx, appointment, expected_version, changes,
            EventType.UNDO_APPLIED, now,
            reason=reason,
            extra_payload={
                "compensated_event_id": str(target.id),
                "compensated_event_type": target.event_type,
            },
            undone_event_id=target.id,
        )

        if not _mark_superseded(db, target.id, compensation.id):
            # Lost the race to another undo; the whole transaction rolls back
            raise AlreadyUndone(target.id)

        logger.info(
            "Compensated %s event with %s",
            target.event_type,
            compensation.id,
            extra={"appointment_id": str(appointment_id)},
        )
        return appointment

    return appointment_service.run_mutation(
        db,
        ctx,
        operation=appointment_service.appointment_operation(appointment_id, "undo"),
        idempotency_key=idempotency_key,
        fingerprint_fields={
            "appointment_id": appointment_id,
            "undo_event_id": target_event_id,
            "expected_version": expected_version,
            "reason": reason,
        },
        validate=validate,
        apply=apply,
        appointment_id=appointment_id,
    )
