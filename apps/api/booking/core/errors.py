"""Typed errors surfaced by the mutation engine and the reconciler.

Every error carries a machine-readable code, a human-actionable message and a
retryable flag so the immediate caller can decide whether to retry, prompt the
user, or escalate.
"""

from typing import Any
from uuid import UUID


class BookingError(Exception):
    """Base exception for booking core errors."""

    code = "BOOKING_ERROR"
    http_status = 400
    retryable = False
    default_message = "Request could not be completed."

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.default_message
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BookingError):
    """Malformed or inconsistent input. No write was attempted."""

    code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "Request is invalid."


class AppointmentNotFound(BookingError):
    code = "APPOINTMENT_NOT_FOUND"
    http_status = 404
    default_message = "Appointment not found."

    def __init__(self, appointment_id: UUID | str, message: str | None = None):
        self.appointment_id = appointment_id
        super().__init__(
            message or f"Appointment {appointment_id} not found.",
            details={"appointment_id": str(appointment_id)},
        )


class VersionConflict(BookingError):
    """Raised when expected_version doesn't match current version."""

    code = "VERSION_CONFLICT"
    http_status = 409
    retryable = True
    default_message = "Appointment changed on another device. Refresh and retry."

    def __init__(self, expected: int, actual: int | None = None, message: str | None = None):
        self.expected = expected
        self.actual = actual
        details: dict[str, Any] = {"expected_version": expected}
        if actual is not None:
            details["current_version"] = actual
        super().__init__(message, details=details)


class IdempotencyKeyReused(BookingError):
    """Key is bound to a different payload. Caller bug, never retry with the same key."""

    code = "IDEMPOTENCY_KEY_REUSED"
    http_status = 409
    default_message = "Idempotency key already used with different payload."


class AlreadyUndone(BookingError):
    """The target event was already compensated; the desired end state holds."""

    code = "ALREADY_UNDONE"
    http_status = 409
    default_message = "Event was already undone."

    def __init__(
        self,
        target_event_id: UUID | str,
        superseded_by_event_id: UUID | str | None = None,
        appointment: dict[str, Any] | None = None,
    ):
        self.target_event_id = target_event_id
        self.superseded_by_event_id = superseded_by_event_id
        self.appointment = appointment
        details: dict[str, Any] = {"target_event_id": str(target_event_id)}
        if superseded_by_event_id:
            details["superseded_by_event_id"] = str(superseded_by_event_id)
        if appointment is not None:
            details["appointment"] = appointment
        super().__init__(details=details)


class SystemUnsafe(BookingError):
    """Write blocked by the system mode gate."""

    code = "SYSTEM_UNSAFE"
    http_status = 503
    retryable = True
    default_message = "System is in unsafe mode. Writes are paused until health recovers."


class TransactionFailed(BookingError):
    """Storage failure mid-commit. The transaction rolled back, nothing was applied."""

    code = "DB_TRANSACTION_FAILED"
    http_status = 500
    retryable = True
    default_message = "Could not save safely. No changes were committed."


class ReconciliationInProgress(BookingError):
    code = "RECONCILIATION_IN_PROGRESS"
    http_status = 409
    retryable = True
    default_message = "A sync pass is already running for this device."


class TransportFailure(BookingError):
    """Client side: the server could not be reached or answered garbage."""

    code = "TRANSPORT_FAILED"
    http_status = 503
    retryable = True
    default_message = "Server unreachable."


ERROR_TYPES: dict[str, type[BookingError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        AppointmentNotFound,
        VersionConflict,
        IdempotencyKeyReused,
        AlreadyUndone,
        SystemUnsafe,
        TransactionFailed,
        ReconciliationInProgress,
        TransportFailure,
    )
}


def error_from_payload(payload: dict[str, Any]) -> BookingError:
    """Rebuild a typed error from an `{"code", "message", ...}` envelope."""
    code = payload.get("code", BookingError.code)
    message = payload.get("message")
    retryable = payload.get("retryable")
    details = payload.get("details") or {}

    if code == VersionConflict.code:
        error: BookingError = VersionConflict(
            details.get("expected_version", 0), details.get("current_version"), message
        )
    elif code == AlreadyUndone.code:
        error = AlreadyUndone(
            details.get("target_event_id", ""),
            details.get("superseded_by_event_id"),
            details.get("appointment"),
        )
    elif code == AppointmentNotFound.code:
        error = AppointmentNotFound(details.get("appointment_id", ""), message)
    else:
        error_cls = ERROR_TYPES.get(code)
        if error_cls is None:
            error = BookingError(message, retryable=retryable, details=details)
            error.code = code
            return error
        error = error_cls(message, details=details)
    if retryable is not None:
        error.retryable = retryable
    return error
