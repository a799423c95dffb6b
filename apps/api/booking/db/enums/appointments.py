"""Appointment and event enums."""

from enum import Enum


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle status.

    Flow: booked ⇄ cancelled (via cancel / undo of cancel)
    Soft deletion is tracked separately by deleted_at.
    """

    BOOKED = "booked"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    """Closed set of appointment event types."""

    CREATED = "created"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    UNCANCELLED = "uncancelled"
    NOTES_UPDATED = "notes_updated"
    SOFT_DELETED = "soft_deleted"
    RESTORED = "restored"
    UNDO_APPLIED = "undo_applied"


class ActorType(str, Enum):
    OWNER = "owner"
    SYSTEM = "system"


# Default appointment status
DEFAULT_APPOINTMENT_STATUS = AppointmentStatus.BOOKED
