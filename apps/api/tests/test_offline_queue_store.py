"""
Tests for the device-side offline queue store.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from booking.client.offline_queue import INTERRUPTED_MESSAGE, OfflineQueueStore
from booking.core.errors import ReconciliationInProgress, ValidationError
from booking.db.enums import QueueItemStatus, QueueItemType
from booking.schemas.appointment import AppointmentRead
from booking.schemas.offline import ItemOutcome

UTC = timezone.utc
DEVICE = "tablet-1"


@pytest.fixture
def store(tmp_path, clock):
    queue = OfflineQueueStore(f"sqlite:///{tmp_path / 'queue.db'}", DEVICE, clock=clock)
    yield queue
    queue.close()


def snapshot(appointment_id, version, status="booked") -> AppointmentRead:
    stamp = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
    return AppointmentRead(
        id=appointment_id,
        client_name="Dana Client",
        client_phone=None,
        service_name="Haircut",
        starts_at=datetime(2026, 3, 2, 10, 0, tzinfo=UTC),
        ends_at=datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
        status=status,
        notes=None,
        version=version,
        created_at=stamp,
        updated_at=stamp,
        deleted_at=None,
    )


def outcome(item, status, **fields) -> ItemOutcome:
    return ItemOutcome(local_id=item.local_id, type=item.type, status=status, **fields)


class TestEnqueue:
    def test_hold_gets_default_expiry_and_stable_key(self, store, clock):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {"client_name": "Walk In"})

        assert item.status == QueueItemStatus.QUEUED
        assert item.device_id == DEVICE
        assert item.idempotency_key
        expires = datetime.fromisoformat(item.payload["hold_expires_at"])
        assert expires - item.created_at == timedelta(minutes=60)
        assert store.get(item.local_id).idempotency_key == item.idempotency_key

    def test_versioned_item_needs_target_and_version(self, store):
        with pytest.raises(ValidationError):
            store.enqueue(QueueItemType.CANCEL, {})
        with pytest.raises(ValidationError):
            store.enqueue(QueueItemType.CANCEL, {}, appointment_id=uuid.uuid4())

    def test_items_listed_fifo(self, store):
        first = store.enqueue(QueueItemType.CREATE_HOLD, {})
        second = store.enqueue(QueueItemType.CANCEL, {}, target_local_id=first.local_id, expected_version=1)

        assert [i.local_id for i in store.items()] == [first.local_id, second.local_id]
        assert [i.local_id for i in store.pending()] == [first.local_id, second.local_id]

    def test_unknown_item(self, store):
        with pytest.raises(ValidationError):
            store.get("nope")


class TestReconcilerHooks:
    def test_confirmed_hold_records_server_id_and_snapshot(self, store):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {})
        server_id = uuid.uuid4()

        store.mark_syncing(item.local_id)
        assert store.get(item.local_id).status == QueueItemStatus.SYNCING
        store.record_outcome(
            outcome(item, QueueItemStatus.CONFIRMED, appointment_id=server_id,
                    appointment=snapshot(server_id, 1)),
            None,
        )

        assert store.resolve_local_id(item.local_id) == server_id
        assert store.cached_snapshot(server_id).version == 1
        assert store.pending() == []

    def test_confirmed_hold_server_id_copied_to_dependents(self, store):
        hold = store.enqueue(QueueItemType.CREATE_HOLD, {})
        cancel = store.enqueue(QueueItemType.CANCEL, {}, target_local_id=hold.local_id, expected_version=1)
        server_id = uuid.uuid4()

        store.record_outcome(
            outcome(hold, QueueItemStatus.CONFIRMED, appointment_id=server_id), None
        )
        store.discard(hold.local_id)

        dependent = store.get(cancel.local_id)
        assert dependent.appointment_id == server_id
        assert dependent.target_local_id == hold.local_id

    def test_failed_item_stays_pending_with_error(self, store):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {})

        store.record_outcome(outcome(item, QueueItemStatus.FAILED, retry_count=1), "System is unsafe")

        stored = store.get(item.local_id)
        assert stored.retry_count == 1
        assert stored.last_error == "System is unsafe"
        assert [i.local_id for i in store.pending()] == [item.local_id]
        assert store.resolve_local_id(item.local_id) is None

    def test_interrupted_sync_recovered_as_failed(self, store):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {})
        store.mark_syncing(item.local_id)

        assert store.recover_interrupted() == 1

        stored = store.get(item.local_id)
        assert stored.status == QueueItemStatus.FAILED
        assert stored.retry_count == 1
        assert stored.last_error == INTERRUPTED_MESSAGE

    def test_older_snapshot_never_overwrites_newer(self, store):
        appointment_id = uuid.uuid4()
        store.cache_snapshot(snapshot(appointment_id, 3, "cancelled"))
        store.cache_snapshot(snapshot(appointment_id, 2))

        cached = store.cached_snapshot(appointment_id)
        assert cached.version == 3
        assert cached.status == "cancelled"


class TestUserActions:
    def test_discard_terminal_item(self, store):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {})
        store.record_outcome(outcome(item, QueueItemStatus.FAILED, retry_count=1), "nope")

        discarded = store.discard(item.local_id)

        assert discarded.local_id == item.local_id
        assert store.items() == []

    def test_queued_item_cannot_be_discarded(self, store):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {})

        with pytest.raises(ValidationError):
            store.discard(item.local_id)
        assert len(store.items()) == 1

    def test_reapply_requeues_conflict_with_fresh_key(self, store):
        item = store.enqueue(QueueItemType.CANCEL, {}, appointment_id=uuid.uuid4(), expected_version=1)
        store.record_outcome(outcome(item, QueueItemStatus.CONFLICT), "changed elsewhere")

        reapplied = store.reapply(item.local_id, 4)

        assert reapplied.status == QueueItemStatus.QUEUED
        assert reapplied.expected_version == 4
        assert reapplied.idempotency_key != item.idempotency_key
        assert reapplied.last_error is None

    def test_reapply_only_for_conflicts(self, store):
        item = store.enqueue(QueueItemType.CANCEL, {}, appointment_id=uuid.uuid4(), expected_version=1)

        with pytest.raises(ValidationError):
            store.reapply(item.local_id, 2)

    def test_other_device_items_invisible(self, tmp_path, store, clock):
        item = store.enqueue(QueueItemType.CREATE_HOLD, {})
        other = OfflineQueueStore(f"sqlite:///{tmp_path / 'queue.db'}", "phone-7", clock=clock)
        try:
            assert other.items() == []
            with pytest.raises(ValidationError):
                other.get(item.local_id)
        finally:
            other.close()


class TestSyncClaim:
    def test_second_store_on_same_file_is_refused(self, tmp_path, store, clock):
        other = OfflineQueueStore(f"sqlite:///{tmp_path / 'queue.db'}", DEVICE, clock=clock)
        try:
            with store.claim():
                with pytest.raises(ReconciliationInProgress):
                    with other.claim():
                        pass
            with other.claim():
                pass
        finally:
            other.close()

    def test_claim_released_when_pass_raises(self, store):
        with pytest.raises(RuntimeError):
            with store.claim():
                raise RuntimeError("network gone")

        with store.claim():
            pass

    def test_stale_claim_taken_over(self, tmp_path, clock):
        url = f"sqlite:///{tmp_path / 'queue.db'}"
        crashed = OfflineQueueStore(url, DEVICE, clock=clock, claim_ttl=timedelta(minutes=5))
        survivor = OfflineQueueStore(url, DEVICE, clock=clock, claim_ttl=timedelta(minutes=5))
        # Entered and never left, as by a process that died mid-pass
        abandoned = crashed.claim()
        abandoned.__enter__()
        try:
            with pytest.raises(ReconciliationInProgress):
                with survivor.claim():
                    pass
            clock.advance(timedelta(minutes=6))
            with survivor.claim():
                pass
        finally:
            abandoned.__exit__(None, None, None)
            crashed.close()
            survivor.close()

    def test_other_devices_claim_independently(self, tmp_path, store, clock):
        other = OfflineQueueStore(f"sqlite:///{tmp_path / 'queue.db'}", "phone-7", clock=clock)
        try:
            with store.claim():
                with other.claim():
                    pass
        finally:
            other.close()
