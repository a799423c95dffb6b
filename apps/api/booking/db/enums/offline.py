"""Offline queue enums (client-held intents)."""

from enum import Enum


class QueueItemType(str, Enum):
    CREATE_HOLD = "create_hold"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    UNDO = "undo"


class QueueItemStatus(str, Enum):
    """
    Offline queue item status.

    Flow: queued → syncing → confirmed
                         ↘ conflict (user must discard or reapply)
                         ↘ failed (eligible for the next pass)
    """

    QUEUED = "queued"
    SYNCING = "syncing"
    CONFIRMED = "confirmed"
    CONFLICT = "conflict"
    FAILED = "failed"


# Items picked up by a reconciliation pass
RECONCILABLE_STATUSES = (QueueItemStatus.QUEUED, QueueItemStatus.FAILED)

# Terminal states the user may clear explicitly
CLEARABLE_STATUSES = (QueueItemStatus.CONFIRMED, QueueItemStatus.CONFLICT, QueueItemStatus.FAILED)
