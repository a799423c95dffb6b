"""Appointment service - the reliable mutation engine.

Every state-changing operation runs as one atomic unit, in this order:
1. Resolve the idempotency key (replay a stored result, or reject reuse)
2. Validate input and domain rules
3. Consult the system mode gate
4. Conditional update on `version == expected_version` (compare-and-swap)
5. Bump version, append the event, stage the ledger entry, commit

Either snapshot + event + ledger entry all commit, or nothing does.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking.core.clock import Clock, system_clock
from booking.core.errors import (
    AppointmentNotFound,
    BookingError,
    IdempotencyKeyReused,
    TransactionFailed,
    ValidationError,
    VersionConflict,
)
from booking.core.mode_gate import SystemModeGate
from booking.core.structured_logging import build_log_context
from booking.db.enums import ActorType, AppointmentStatus, EventType
from booking.db.models import Appointment, AppointmentEvent
from booking.schemas.appointment import AppointmentCreate, AppointmentRead
from booking.services import idempotency_service

logger = logging.getLogger(__name__)

DEFAULT_IDEMPOTENCY_TTL = timedelta(hours=168)

# Fields captured in event payloads (before/after)
SNAPSHOT_FIELDS = (
    "client_name",
    "client_phone",
    "service_name",
    "starts_at",
    "ends_at",
    "status",
    "notes",
    "deleted_at",
)
DATETIME_FIELDS = {"starts_at", "ends_at", "deleted_at"}


# =============================================================================
# Context
# =============================================================================

@dataclass
class MutationContext:
    """Collaborators handed to every mutation (no ambient state)."""
    gate: SystemModeGate
    clock: Clock = system_clock
    actor_type: ActorType = ActorType.OWNER
    actor_id: str | None = None
    idempotency_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL


# =============================================================================
# Operation identities
# =============================================================================

def create_operation() -> str:
    return "POST:/v1/appointments"


def appointment_operation(appointment_id: UUID, action: str) -> str:
    """Route + resource identity a key is scoped to."""
    return f"POST:/v1/appointments/{appointment_id}/{action}"


# =============================================================================
# Snapshot helpers
# =============================================================================

def _serialize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.isoformat()
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def parse_snapshot_value(field_name: str, value: Any) -> Any:
    """Inverse of the payload serialization for one snapshot field."""
    if value is None or field_name not in DATETIME_FIELDS:
        return value
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def snapshot_fields(appointment: Appointment) -> dict[str, Any]:
    """JSON-safe copy of the mutable fields, used for event before/after."""
    return {name: _serialize_value(getattr(appointment, name)) for name in SNAPSHOT_FIELDS}


def to_read(appointment: Appointment) -> dict[str, Any]:
    """Serialize a snapshot exactly as it is returned (and stored for replay)."""
    return AppointmentRead.model_validate(appointment).model_dump(mode="json")


def _normalize_instant(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None:
        raise ValidationError(f"{field_name} must include a timezone offset.")
    return value.astimezone(timezone.utc)


def _validate_window(starts_at: datetime, ends_at: datetime) -> tuple[datetime, datetime]:
    starts_at = _normalize_instant(starts_at, "starts_at")
    ends_at = _normalize_instant(ends_at, "ends_at")
    if ends_at <= starts_at:
        raise ValidationError("ends_at must be greater than starts_at.")
    return starts_at, ends_at


def _require_key(idempotency_key: str | None) -> str:
    if idempotency_key is None or not idempotency_key.strip():
        raise ValidationError("Missing Idempotency-Key.")
    if len(idempotency_key) > 255:
        raise ValidationError("Idempotency-Key must be at most 255 characters.")
    return idempotency_key


def _require_version(expected_version: int) -> None:
    if expected_version < 1:
        raise ValidationError("expected_version must be a positive integer.")


# =============================================================================
# Atomic unit
# =============================================================================

def _replay_after_race(
    db: Session,
    idempotency_key: str,
    operation: str,
    payload_fingerprint: str,
) -> dict[str, Any] | None:
    """Re-check the ledger after a lost race; a committed twin means replay."""
    try:
        return idempotency_service.resolve(db, idempotency_key, operation, payload_fingerprint)
    finally:
        db.rollback()


def run_mutation(
    db: Session,
    ctx: MutationContext,
    *,
    operation: str,
    idempotency_key: str,
    fingerprint_fields: dict[str, Any],
    apply: Callable[[datetime], Appointment],
    validate: Callable[[], None] | None = None,
    appointment_id: UUID | None = None,
) -> AppointmentRead:
    """
    Execute one mutation as a single all-or-nothing unit.

    `apply` performs the conditional update and appends exactly one event; it
    runs inside the transaction that also stages the ledger entry.
    """
    idempotency_key = _require_key(idempotency_key)
    payload_fingerprint = idempotency_service.fingerprint(
        {name: _serialize_value(value) for name, value in fingerprint_fields.items()}
    )
    log_context = build_log_context(appointment_id=appointment_id, operation=operation)

    # 1. Replay or reject
    try:
        prior = idempotency_service.resolve(db, idempotency_key, operation, payload_fingerprint)
    except IdempotencyKeyReused:
        db.rollback()
        logger.info("Idempotency key reused with different payload", extra=log_context)
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Idempotency lookup failed", extra=log_context)
        raise TransactionFailed() from exc
    if prior is not None:
        db.rollback()
        logger.info("Replayed stored result", extra=log_context)
        return AppointmentRead.model_validate(prior)

    try:
        # 2. Validate, 3. gate
        if validate is not None:
            validate()
        ctx.gate.ensure_writable()

        # 4-5. Conditional update + event, then ledger entry
        now = ctx.clock.now()
        appointment = apply(now)
        result = to_read(appointment)
        idempotency_service.store(
            db,
            idempotency_key,
            operation,
            payload_fingerprint,
            result,
            now,
            ctx.idempotency_ttl,
        )
        db.commit()
    except VersionConflict:
        db.rollback()
        replay = _replay_after_race(db, idempotency_key, operation, payload_fingerprint)
        if replay is not None:
            logger.info("Replayed result of concurrent twin request", extra=log_context)
            return AppointmentRead.model_validate(replay)
        logger.info("Version conflict", extra=log_context)
        raise
    except BookingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        replay = _replay_after_race(db, idempotency_key, operation, payload_fingerprint)
        if replay is not None:
            logger.info("Replayed result of concurrent twin request", extra=log_context)
            return AppointmentRead.model_validate(replay)
        logger.exception("Mutation rejected by storage constraints", extra=log_context)
        raise TransactionFailed() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Mutation transaction failed", extra=log_context)
        raise TransactionFailed() from exc
    except Exception:
        # Nothing staged by this unit may survive into the session's next commit
        db.rollback()
        logger.exception("Mutation aborted by unexpected error", extra=log_context)
        raise

    logger.info(
        "Committed %s (version %d)", operation, result["version"], extra=log_context
    )
    return AppointmentRead.model_validate(result)


def load_for_update(
    db: Session,
    appointment_id: UUID,
    expected_version: int,
    *,
    deleted: bool | None = False,
) -> Appointment:
    """
    Fetch the snapshot a mutation is about to change.

    deleted=False requires a live row, True a soft-deleted one, None either.
    """
    appointment = db.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None:
        raise AppointmentNotFound(appointment_id)
    if deleted is False and appointment.deleted_at is not None:
        raise AppointmentNotFound(appointment_id)
    if deleted is True and appointment.deleted_at is None:
        raise ValidationError("Appointment is not deleted.")
    if appointment.version != expected_version:
        raise VersionConflict(expected_version, appointment.version)
    return appointment


def compare_and_swap(
    db: Session,
    appointment: Appointment,
    expected_version: int,
    changes: dict[str, Any],
    now: datetime,
) -> Appointment:
    """
    Apply `changes` only if the row is still at `expected_version`.

    Zero rows affected means another writer got there first.
    """
    stmt = (
        update(Appointment)
        .where(Appointment.id == appointment.id)
        .where(Appointment.version == expected_version)
        .values(**changes, version=Appointment.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        raise VersionConflict(expected_version)
    db.refresh(appointment)
    return appointment


def append_event(
    db: Session,
    ctx: MutationContext,
    appointment: Appointment,
    event_type: EventType,
    payload: dict[str, Any],
    now: datetime,
    reason: str | None = None,
    undone_event_id: UUID | None = None,
) -> AppointmentEvent:
    """Append the event produced by the current mutation."""
    event = AppointmentEvent(
        appointment_id=appointment.id,
        event_type=event_type.value,
        actor_type=ctx.actor_type.value,
        actor_id=ctx.actor_id,
        reason=reason,
        payload=payload,
        appointment_version=appointment.version,
        undone_event_id=undone_event_id,
        created_at=now,
    )
    db.add(event)
    db.flush()
    return event


def apply_change(
    db: Session,
    ctx: MutationContext,
    appointment: Appointment,
    expected_version: int,
    changes: dict[str, Any],
    event_type: EventType,
    now: datetime,
    reason: str | None = None,
    extra_payload: dict[str, Any] | None = None,
    undone_event_id: UUID | None = None,
) -> tuple[Appointment, AppointmentEvent]:
    """CAS the snapshot and append its event in the current transaction."""
    before = snapshot_fields(appointment)
    appointment = compare_and_swap(db, appointment, expected_version, changes, now)
    payload = {"before": before, "after": snapshot_fields(appointment)}
    if extra_payload:
        payload.update(extra_payload)
    event = append_event(
        db, ctx, appointment, event_type, payload, now,
        reason=reason, undone_event_id=undone_event_id,
    )
    return appointment, event


# =============================================================================
# Mutations
# =============================================================================

def create_appointment(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    data: AppointmentCreate,
) -> AppointmentRead:
    """Create an appointment at version 1 with its `created` event."""
    fields = data.model_dump()

    def validate() -> None:
        _validate_window(data.starts_at, data.ends_at)

    def apply(now: datetime) -> Appointment:
        existing = db.execute(
            select(Appointment.id).where(Appointment.creation_key == idempotency_key)
        ).scalar_one_or_none()
        if existing is not None:
            # Ledger entry expired and was purged; never create a second row
            raise IdempotencyKeyReused(
                "Idempotency key already created an appointment; its replay window has expired.",
                details={"appointment_id": str(existing)},
            )
        starts_at, ends_at = _validate_window(data.starts_at, data.ends_at)
        appointment = Appointment(
            client_name=data.client_name,
            client_phone=data.client_phone,
            service_name=data.service_name,
            starts_at=starts_at,
            ends_at=ends_at,
            notes=data.notes,
            status=AppointmentStatus.BOOKED.value,
            version=1,
            creation_key=idempotency_key,
            created_at=now,
            updated_at=now,
            deleted_at=None,
        )
        db.add(appointment)
        db.flush()
        append_event(
            db, ctx, appointment, EventType.CREATED,
            {"before": None, "after": snapshot_fields(appointment)}, now,
        )
        return appointment

    return run_mutation(
        db,
        ctx,
        operation=create_operation(),
        idempotency_key=idempotency_key,
        fingerprint_fields=fields,
        validate=validate,
        apply=apply,
    )


def reschedule_appointment(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    appointment_id: UUID,
    expected_version: int,
    starts_at: datetime,
    ends_at: datetime,
    reason: str | None = None,
) -> AppointmentRead:
    """Move the time window; emits `rescheduled`."""

    def validate() -> None:
        _require_version(expected_version)
        _validate_window(starts_at, ends_at)

    def apply(now: datetime) -> Appointment:
        new_start, new_end = _validate_window(starts_at, ends_at)
        appointment = load_for_update(db, appointment_id, expected_version)
        if appointment.starts_at == new_start and appointment.ends_at == new_end:
            raise ValidationError("Appointment already has this time window.")
        appointment, _ = apply_change(
            db, ctx, appointment, expected_version,
            {"starts_at": new_start, "ends_at": new_end},
            EventType.RESCHEDULED, now, reason=reason,
        )
        return appointment

    return run_mutation(
        db,
        ctx,
        operation=appointment_operation(appointment_id, "reschedule"),
        idempotency_key=idempotency_key,
        fingerprint_fields={
            "appointment_id": appointment_id,
            "expected_version": expected_version,
            "starts_at": starts_at,
            "ends_at": ends_at,
            "reason": reason,
        },
        validate=validate,
        apply=apply,
        appointment_id=appointment_id,
    )


def cancel_appointment(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    appointment_id: UUID,
    expected_version: int,
    reason: str | None = None,
) -> AppointmentRead:
    """Flip booked -> cancelled; emits `cancelled`."""

    def validate() -> None:
        _require_version(expected_version)

    def apply(now: datetime) -> Appointment:
        appointment = load_for_update(db, appointment_id, expected_version)
        if appointment.status == AppointmentStatus.CANCELLED.value:
            raise ValidationError("Appointment is already cancelled.")
        appointment, _ = apply_change(
            db, ctx, appointment, expected_version,
            {"status": AppointmentStatus.CANCELLED.value},
            EventType.CANCELLED, now, reason=reason,
        )
        return appointment

    return run_mutation(
        db,
        ctx,
        operation=appointment_operation(appointment_id, "cancel"),
        idempotency_key=idempotency_key,
        fingerprint_fields={
            "appointment_id": appointment_id,
            "expected_version": expected_version,
            "reason": reason,
        },
        validate=validate,
        apply=apply,
        appointment_id=appointment_id,
    )


def update_notes(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    appointment_id: UUID,
    expected_version: int,
    notes: str | None,
    reason: str | None = None,
) -> AppointmentRead:
    """Replace the free-text notes; emits `notes_updated`."""

    def validate() -> None:
        _require_version(expected_version)

    def apply(now: datetime) -> Appointment:
        appointment = load_for_update(db, appointment_id, expected_version)
        if appointment.notes == notes:
            raise ValidationError("Notes are unchanged.")
        appointment, _ = apply_change(
            db, ctx, appointment, expected_version,
            {"notes": notes},
            EventType.NOTES_UPDATED, now, reason=reason,
        )
        return appointment

    return run_mutation(
        db,
        ctx,
        operation=appointment_operation(appointment_id, "notes"),
        idempotency_key=idempotency_key,
        fingerprint_fields={
            "appointment_id": appointment_id,
            "expected_version": expected_version,
            "notes": notes,
            "reason": reason,
        },
        validate=validate,
        apply=apply,
        appointment_id=appointment_id,
    )


def soft_delete_appointment(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    appointment_id: UUID,
    expected_version: int,
    reason: str | None = None,
) -> AppointmentRead:
    """Hide the appointment from normal reads; the row is kept."""

    def validate() -> None:
        _require_version(expected_version)

    def apply(now: datetime) -> Appointment:
        appointment = load_for_update(db, appointment_id, expected_version)
        appointment, _ = apply_change(
            db, ctx, appointment, expected_version,
            {"deleted_at": now},
            EventType.SOFT_DELETED, now, reason=reason,
        )
        return appointment

    return run_mutation(
        db,
        ctx,
        operation=appointment_operation(appointment_id, "delete"),
        idempotency_key=idempotency_key,
        fingerprint_fields={
            "appointment_id": appointment_id,
            "expected_version": expected_version,
            "reason": reason,
        },
        validate=validate,
        apply=apply,
        appointment_id=appointment_id,
    )


def restore_appointment(
    db: Session,
    ctx: MutationContext,
    idempotency_key: str,
    appointment_id: UUID,
    expected_version: int,
    reason: str | None = None,
) -> AppointmentRead:
    """Clear deleted_at on a soft-deleted appointment."""

    def validate() -> None:
        _require_version(expected_version)

    def apply(now: datetime) -> Appointment:
        appointment = load_for_update(db, appointment_id, expected_version, deleted=True)
        appointment, _ = apply_change(
            db, ctx, appointment, expected_version,
            {"deleted_at": None},
            EventType.RESTORED, now, reason=reason,
        )
        return appointment

    return run_mutation(
        db,
        ctx,
        operation=appointment_operation(appointment_id, "restore"),
        idempotency_key=idempotency_key,
        fingerprint_fields={
            "appointment_id": appointment_id,
            "expected_version": expected_version,
            "reason": reason,
        },
        validate=validate,
        apply=apply,
        appointment_id=appointment_id,
    )


# =============================================================================
# Reads
# =============================================================================

def get_appointment(
    db: Session,
    appointment_id: UUID,
    include_deleted: bool = False,
) -> Appointment | None:
    """Get appointment by ID. Soft-deleted rows only when asked for."""
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        return None
    if appointment.deleted_at is not None and not include_deleted:
        return None
    return appointment


def list_appointments(db: Session, day: date) -> list[Appointment]:
    """Live appointments starting on `day` (UTC), earliest first."""
    day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    return list(db.execute(
        select(Appointment)
        .where(Appointment.deleted_at.is_(None))
        .where(Appointment.starts_at >= day_start)
        .where(Appointment.starts_at < day_end)
        .order_by(Appointment.starts_at)
    ).scalars().all())


def list_events(db: Session, appointment_id: UUID) -> list[AppointmentEvent]:
    """Full event history, oldest first. No version check."""
    return list(db.execute(
        select(AppointmentEvent)
        .where(AppointmentEvent.appointment_id == appointment_id)
        .order_by(AppointmentEvent.created_at, AppointmentEvent.appointment_version)
    ).scalars().all())
