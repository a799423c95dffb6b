"""
Offline queue reconciler.

Drains a device's locally captured intents through the mutation engine in
strict FIFO order, one pass per device at a time. Every item ends the pass
with a user-visible status: confirmed, conflict or failed. Conflicts are
never merged automatically; the user discards or reapplies them.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Protocol
from uuid import UUID

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from booking.core.clock import Clock, system_clock
from booking.core.errors import (
    AlreadyUndone,
    BookingError,
    ReconciliationInProgress,
    ValidationError,
    VersionConflict,
)
from booking.core.structured_logging import build_log_context
from booking.db.enums import (
    ActorType,
    QueueItemStatus,
    QueueItemType,
    RECONCILABLE_STATUSES,
)
from booking.schemas.appointment import AppointmentCreate, AppointmentRead
from booking.schemas.offline import ItemOutcome, QueueItem, ReconcileReport
from booking.services import appointment_service, undo_service
from booking.services.appointment_service import MutationContext

logger = logging.getLogger(__name__)

DEPENDENCY_UNRESOLVED = "DEPENDENCY_UNRESOLVED"
INTERNAL_ERROR = "INTERNAL_ERROR"

_INSTANT = TypeAdapter(datetime)


# =============================================================================
# Collaborators
# =============================================================================

class MutationExecutor(Protocol):
    """Mutation engine entry points, in-process or over HTTP."""

    def create(self, idempotency_key: str, data: AppointmentCreate) -> AppointmentRead: ...

    def reschedule(
        self,
        idempotency_key: str,
        appointment_id: UUID,
        expected_version: int,
        starts_at: datetime,
        ends_at: datetime,
        reason: str | None = None,
    ) -> AppointmentRead: ...

    def cancel(
        self,
        idempotency_key: str,
        appointment_id: UUID,
        expected_version: int,
        reason: str | None = None,
    ) -> AppointmentRead: ...

    def undo(
        self,
        idempotency_key: str,
        appointment_id: UUID,
        undo_event_id: UUID,
        expected_version: int,
        reason: str | None = None,
    ) -> AppointmentRead: ...


class QueueStore(Protocol):
    """Durable side of the queue; status changes are persisted as they happen."""

    def mark_syncing(self, local_id: str) -> None: ...

    def record_outcome(self, outcome: ItemOutcome, last_error: str | None) -> None: ...

    def resolve_local_id(self, local_id: str) -> UUID | None: ...


class LocalMutationExecutor:
    """Runs queue items against the in-process engine as the device's actor."""

    def __init__(self, db: Session, ctx: MutationContext):
        self.db = db
        self.ctx = ctx

    @classmethod
    def for_device(cls, db: Session, ctx: MutationContext, device_id: str) -> "LocalMutationExecutor":
        device_ctx = MutationContext(
            gate=ctx.gate,
            clock=ctx.clock,
            actor_type=ActorType.OWNER,
            actor_id=f"device:{device_id}",
            idempotency_ttl=ctx.idempotency_ttl,
        )
        return cls(db, device_ctx)

    def create(self, idempotency_key, data):
        return appointment_service.create_appointment(self.db, self.ctx, idempotency_key, data)

    def reschedule(self, idempotency_key, appointment_id, expected_version, starts_at, ends_at, reason=None):
        return appointment_service.reschedule_appointment(
            self.db, self.ctx, idempotency_key, appointment_id,
            expected_version, starts_at, ends_at, reason,
        )

    def cancel(self, idempotency_key, appointment_id, expected_version, reason=None):
        return appointment_service.cancel_appointment(
            self.db, self.ctx, idempotency_key, appointment_id, expected_version, reason
        )

    def undo(self, idempotency_key, appointment_id, undo_event_id, expected_version, reason=None):
        return undo_service.undo_event(
            self.db, self.ctx, idempotency_key, appointment_id,
            undo_event_id, expected_version, reason,
        )


# =============================================================================
# Single-flight
# =============================================================================

class SingleFlight:
    """Per-device reconciliation locks. A second concurrent pass is rejected."""

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._started: dict[str, datetime] = {}

    @contextmanager
    def hold(self, device_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(device_id, threading.Lock())
        if not lock.acquire(blocking=False):
            raise ReconciliationInProgress(details={"device_id": device_id})
        with self._guard:
            self._started[device_id] = self._clock.now()
        try:
            yield
        finally:
            with self._guard:
                self._started.pop(device_id, None)
            lock.release()

    def is_running(self, device_id: str) -> bool:
        with self._guard:
            return device_id in self._started

    def running_ages(self) -> dict[str, float]:
        """Seconds each running pass has held its lock."""
        now = self._clock.now()
        with self._guard:
            return {
                device_id: (now - started).total_seconds()
                for device_id, started in self._started.items()
            }


# Process-wide registry used by the API and the queue probe
single_flight = SingleFlight()


# =============================================================================
# Pass
# =============================================================================

class _DependencyUnresolved(Exception):
    pass


def _error_envelope(code: str, message: str, retryable: bool) -> dict[str, Any]:
    return {"code": code, "message": message, "retryable": retryable}


def _ordered(items: list[QueueItem]) -> list[QueueItem]:
    """FIFO by capture time; local_id breaks ties deterministically."""
    return sorted(items, key=lambda item: (item.created_at, item.local_id))


def _resolve_target(
    item: QueueItem,
    created: dict[str, UUID],
    store: QueueStore | None,
) -> UUID:
    if item.appointment_id is not None:
        return item.appointment_id
    if item.target_local_id is None:
        raise ValidationError(
            "Queue item has neither appointment_id nor target_local_id.",
            details={"local_id": item.local_id},
        )
    resolved = created.get(item.target_local_id)
    if resolved is None and store is not None:
        resolved = store.resolve_local_id(item.target_local_id)
    if resolved is None:
        raise _DependencyUnresolved(item.target_local_id)
    return resolved


def _require_expected_version(item: QueueItem) -> int:
    if item.expected_version is None:
        raise ValidationError(
            f"{item.type.value} item requires expected_version.",
            details={"local_id": item.local_id},
        )
    return item.expected_version


def _parse_instant(value: Any, name: str) -> datetime:
    """Parse a payload timestamp the same way request bodies are parsed."""
    if not isinstance(value, (str, datetime)):
        raise ValidationError(f"{name} is required.")
    try:
        return _INSTANT.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"{name} is not an ISO-8601 timestamp.") from exc


def _execute(
    item: QueueItem,
    executor: MutationExecutor,
    appointment_id: UUID | None,
    clock: Clock,
    hold_ttl: timedelta | None = None,
) -> AppointmentRead:
    payload = item.payload
    reason = payload.get("reason")

    if item.type == QueueItemType.CREATE_HOLD:
        hold_expires_at = payload.get("hold_expires_at")
        expires = None
        if hold_expires_at is not None:
            expires = _parse_instant(hold_expires_at, "hold_expires_at")
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
        elif hold_ttl is not None:
            expires = item.created_at + hold_ttl
        if expires is not None and expires <= clock.now():
            raise ValidationError(
                "Offline hold expired before it could be confirmed.",
                details={"hold_expires_at": expires.isoformat()},
            )
        fields = {k: v for k, v in payload.items() if k != "hold_expires_at"}
        try:
            data = AppointmentCreate.model_validate(fields)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Hold payload is invalid.",
                details={"errors": [error["msg"] for error in exc.errors()]},
            ) from exc
        return executor.create(item.idempotency_key, data)

    expected_version = _require_expected_version(item)

    if item.type == QueueItemType.RESCHEDULE:
        return executor.reschedule(
            item.idempotency_key,
            appointment_id,
            expected_version,
            _parse_instant(payload.get("starts_at"), "starts_at"),
            _parse_instant(payload.get("ends_at"), "ends_at"),
            reason,
        )
    if item.type == QueueItemType.CANCEL:
        return executor.cancel(item.idempotency_key, appointment_id, expected_version, reason)
    if item.type == QueueItemType.UNDO:
        undo_event_id = payload.get("undo_event_id")
        if not undo_event_id:
            raise ValidationError("undo item requires undo_event_id.")
        try:
            target = UUID(str(undo_event_id))
        except ValueError as exc:
            raise ValidationError("undo_event_id is not a valid id.") from exc
        return executor.undo(item.idempotency_key, appointment_id, target, expected_version, reason)

    raise ValidationError(f"Unknown queue item type: {item.type}")


def _reconcile_item(
    item: QueueItem,
    executor: MutationExecutor,
    created: dict[str, UUID],
    store: QueueStore | None,
    clock: Clock,
    hold_ttl: timedelta | None,
) -> ItemOutcome:
    def failed(error: dict[str, Any], appointment_id: UUID | None = None) -> ItemOutcome:
        return ItemOutcome(
            local_id=item.local_id,
            type=item.type,
            status=QueueItemStatus.FAILED,
            retry_count=item.retry_count + 1,
            appointment_id=appointment_id,
            error=error,
        )

    appointment_id: UUID | None = None
    try:
        if item.type != QueueItemType.CREATE_HOLD:
            appointment_id = _resolve_target(item, created, store)
        result = _execute(item, executor, appointment_id, clock, hold_ttl)
    except _DependencyUnresolved:
        return failed(_error_envelope(
            DEPENDENCY_UNRESOLVED,
            f"Hold {item.target_local_id} has not been confirmed yet.",
            True,
        ))
    except AlreadyUndone as exc:
        appointment = (
            AppointmentRead.model_validate(exc.appointment) if exc.appointment else None
        )
        return ItemOutcome(
            local_id=item.local_id,
            type=item.type,
            status=QueueItemStatus.CONFIRMED,
            retry_count=item.retry_count,
            appointment_id=appointment_id,
            appointment=appointment,
            error=exc.to_dict(),
        )
    except VersionConflict as exc:
        return ItemOutcome(
            local_id=item.local_id,
            type=item.type,
            status=QueueItemStatus.CONFLICT,
            retry_count=item.retry_count,
            appointment_id=appointment_id,
            error=exc.to_dict(),
        )
    except BookingError as exc:
        return failed(exc.to_dict(), appointment_id)
    except Exception as exc:
        logger.exception(
            "Unexpected error replaying queue item %s",
            item.local_id,
            extra=build_log_context(device_id=item.device_id, operation=item.type.value),
        )
        return failed(_error_envelope(INTERNAL_ERROR, str(exc) or type(exc).__name__, True),
                      appointment_id)

    if item.type == QueueItemType.CREATE_HOLD:
        created[item.local_id] = result.id
    return ItemOutcome(
        local_id=item.local_id,
        type=item.type,
        status=QueueItemStatus.CONFIRMED,
        retry_count=item.retry_count,
        appointment_id=result.id,
        appointment=result,
    )


def reconcile_offline_queue(
    device_id: str,
    items: list[QueueItem],
    executor: MutationExecutor,
    *,
    store: QueueStore | None = None,
    flight: SingleFlight = single_flight,
    clock: Clock = system_clock,
    hold_ttl: timedelta | None = None,
) -> ReconcileReport:
    """
    Run one reconciliation pass for `device_id`.

    `hold_ttl` bounds create_hold items that carry no explicit hold_expires_at.

    Raises:
        ReconciliationInProgress if a pass for this device is already running
        ValidationError if an item belongs to another device
    """
    foreign = [item.local_id for item in items if item.device_id != device_id]
    if foreign:
        raise ValidationError(
            "Queue items belong to a different device.",
            details={"local_ids": foreign},
        )

    report = ReconcileReport(device_id=device_id)
    with flight.hold(device_id):
        pending = [item for item in _ordered(items) if item.status in RECONCILABLE_STATUSES]
        logger.info(
            "Reconciling %d queued item(s)",
            len(pending),
            extra=build_log_context(device_id=device_id),
        )
        created: dict[str, UUID] = {}
        for item in pending:
            if store is not None:
                store.mark_syncing(item.local_id)
            outcome = _reconcile_item(item, executor, created, store, clock, hold_ttl)
            if store is not None:
                last_error = None
                if outcome.error and outcome.status != QueueItemStatus.CONFIRMED:
                    last_error = outcome.error["message"]
                store.record_outcome(outcome, last_error)
            getattr(report, outcome.status.value).append(outcome)
            logger.info(
                "Queue item %s -> %s",
                item.local_id,
                outcome.status.value,
                extra=build_log_context(
                    device_id=device_id,
                    appointment_id=outcome.appointment_id,
                    operation=item.type.value,
                ),
            )

    logger.info(
        "Reconciliation pass done: %d confirmed, %d conflict, %d failed",
        len(report.confirmed),
        len(report.conflict),
        len(report.failed),
        extra=build_log_context(device_id=device_id),
    )
    return report
