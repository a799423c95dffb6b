"""Reconnect-triggered sync of the device's offline queue."""

import logging

from booking.client.api_client import BookingApiClient
from booking.client.offline_queue import OfflineQueueStore
from booking.core.clock import Clock, system_clock
from booking.core.errors import ReconciliationInProgress
from booking.schemas.offline import QueueItem, ReconcileReport
from booking.services.reconcile_service import SingleFlight, reconcile_offline_queue

logger = logging.getLogger(__name__)


class OfflineSync:
    """
    Drains the local queue through the HTTP client.

    Each pass first takes the device's claim in the queue file, so passes
    never overlap for the device, even across processes. Items a dead pass
    left in `syncing` are re-queued as `failed` under that claim.
    """

    def __init__(
        self,
        store: OfflineQueueStore,
        client: BookingApiClient,
        *,
        flight: SingleFlight | None = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.client = client
        self.flight = flight or SingleFlight(clock)
        self.clock = clock

    @property
    def device_id(self) -> str:
        return self.store.device_id

    def run_once(self) -> ReconcileReport:
        """
        One reconciliation pass.

        Raises:
            ReconciliationInProgress if a pass is already running
        """
        with self.store.claim():
            self.store.recover_interrupted()
            return reconcile_offline_queue(
                self.device_id,
                self.store.pending(),
                self.client,
                store=self.store,
                flight=self.flight,
                clock=self.clock,
            )

    def on_reconnect(self) -> ReconcileReport | None:
        """Connectivity came back. Returns None when a pass is already draining."""
        try:
            return self.run_once()
        except ReconciliationInProgress:
            logger.info(
                "Sync already running for device %s; reconnect trigger deferred",
                self.device_id,
            )
            return None

    # ------------------------------------------------------------------
    # Conflict resolution (explicit user decisions)
    # ------------------------------------------------------------------

    def discard(self, local_id: str) -> QueueItem:
        """Keep the server's state: refresh the cached snapshot, drop the intent."""
        item = self.store.get(local_id)
        appointment_id = item.appointment_id or (
            self.store.resolve_local_id(item.target_local_id) if item.target_local_id else None
        )
        if appointment_id is not None:
            self.store.cache_snapshot(self.client.get_appointment(appointment_id))
        return self.store.discard(local_id)

    def reapply(self, local_id: str) -> QueueItem:
        """Keep the local intent: re-queue it against the server's current version."""
        item = self.store.get(local_id)
        appointment_id = item.appointment_id or (
            self.store.resolve_local_id(item.target_local_id) if item.target_local_id else None
        )
        if appointment_id is None:
            return self.store.reapply(local_id, item.expected_version or 1)
        current = self.client.get_appointment(appointment_id)
        self.store.cache_snapshot(current)
        return self.store.reapply(local_id, current.version)
