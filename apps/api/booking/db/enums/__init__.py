"""Enum definitions for application constants."""

from booking.db.enums.appointments import (
    DEFAULT_APPOINTMENT_STATUS,
    ActorType,
    AppointmentStatus,
    EventType,
)
from booking.db.enums.offline import (
    CLEARABLE_STATUSES,
    RECONCILABLE_STATUSES,
    QueueItemStatus,
    QueueItemType,
)
from booking.db.enums.system import CheckStatus, HealthCheckName, SystemMode

__all__ = [
    "ActorType",
    "AppointmentStatus",
    "CLEARABLE_STATUSES",
    "CheckStatus",
    "DEFAULT_APPOINTMENT_STATUS",
    "EventType",
    "HealthCheckName",
    "QueueItemStatus",
    "QueueItemType",
    "RECONCILABLE_STATUSES",
    "SystemMode",
]
