"""System health and mode enums."""

from enum import Enum


class CheckStatus(str, Enum):
    """Health status reported by a single subsystem check."""

    ONLINE = "online"
    DEGRADED = "degraded"
    FAILED = "failed"


class SystemMode(str, Enum):
    """
    Aggregated write gate.

    online: writes allowed
    degraded: writes allowed, initiator should be warned
    unsafe: all mutations blocked, reads stay available
    """

    ONLINE = "online"
    DEGRADED = "degraded"
    UNSAFE = "unsafe"


class HealthCheckName(str, Enum):
    DATABASE = "database"
    EVENT_LOG = "event_log"
    QUEUE = "queue"
