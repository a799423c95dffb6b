"""
Tests for the appointment mutation engine.

Tests cover:
- Create / reschedule / cancel / notes / soft delete / restore
- Version and event log moving in lockstep
- Validation before any write
- All-or-nothing commits
"""
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from booking.core.errors import (
    AppointmentNotFound,
    TransactionFailed,
    ValidationError,
    VersionConflict,
)
from booking.db.models import Appointment, AppointmentEvent, IdempotencyRecord
from booking.schemas.appointment import AppointmentCreate
from booking.services import appointment_service

UTC = timezone.utc


def event_types(db, appointment_id):
    return [e.event_type for e in appointment_service.list_events(db, appointment_id)]


def event_count(db, appointment_id) -> int:
    return db.execute(
        select(func.count(AppointmentEvent.id))
        .where(AppointmentEvent.appointment_id == appointment_id)
    ).scalar_one()


# =============================================================================
# Create
# =============================================================================

class TestCreate:
    def test_create_starts_at_version_one(self, db, make_appointment):
        appt = make_appointment()

        assert appt.version == 1
        assert appt.status == "booked"
        assert appt.deleted_at is None
        assert event_types(db, appt.id) == ["created"]

    def test_created_event_records_after_snapshot(self, db, make_appointment):
        appt = make_appointment(notes="bring photos")

        (event,) = appointment_service.list_events(db, appt.id)
        assert event.payload["before"] is None
        assert event.payload["after"]["notes"] == "bring photos"
        assert event.payload["after"]["starts_at"] == "2026-03-02T10:00:00+00:00"
        assert event.appointment_version == 1

    def test_create_normalizes_offsets_to_utc(self, db, make_appointment):
        tz = timezone(timedelta(hours=2))
        appt = make_appointment(
            starts_at=datetime(2026, 3, 2, 12, 0, tzinfo=tz),
            ends_at=datetime(2026, 3, 2, 13, 0, tzinfo=tz),
        )

        assert appt.starts_at == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
        assert appt.starts_at.utcoffset() == timedelta(0)

    def test_create_rejects_inverted_window(self, db, make_appointment):
        with pytest.raises(ValidationError):
            make_appointment(ends_at=datetime(2026, 3, 2, 9, 0, tzinfo=UTC))

        assert db.execute(select(func.count(Appointment.id))).scalar_one() == 0

    def test_create_rejects_naive_datetimes(self, db, make_appointment):
        with pytest.raises(ValidationError, match="timezone"):
            make_appointment(
                starts_at=datetime(2026, 3, 2, 10, 0),
                ends_at=datetime(2026, 3, 2, 11, 0),
            )

    def test_create_requires_idempotency_key(self, db, ctx, appointment_data):
        data = AppointmentCreate(**appointment_data())
        with pytest.raises(ValidationError):
            appointment_service.create_appointment(db, ctx, "   ", data)


# =============================================================================
# Versioned mutations
# =============================================================================

class TestReschedule:
    def test_reschedule_bumps_version_and_appends_event(self, db, ctx, make_appointment):
        appt = make_appointment()

        result = appointment_service.reschedule_appointment(
            db, ctx, "k-resched", appt.id, 1,
            datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
            reason="client asked",
        )

        assert result.version == 2
        assert result.starts_at == datetime(2026, 3, 2, 11, 0, tzinfo=UTC)
        events = appointment_service.list_events(db, appt.id)
        assert [e.event_type for e in events] == ["created", "rescheduled"]
        assert events[1].reason == "client asked"
        assert events[1].payload["before"]["starts_at"] == "2026-03-02T10:00:00+00:00"
        assert events[1].payload["after"]["starts_at"] == "2026-03-02T11:00:00+00:00"

    def test_stale_version_conflicts_and_leaves_snapshot(self, db, ctx, make_appointment):
        appt = make_appointment()
        appointment_service.cancel_appointment(db, ctx, "k-cancel", appt.id, 1)

        with pytest.raises(VersionConflict) as exc_info:
            appointment_service.reschedule_appointment(
                db, ctx, "k-resched", appt.id, 1,
                datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
                datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
            )

        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"expected_version": 1, "current_version": 2}
        current = appointment_service.get_appointment(db, appt.id)
        assert current.version == 2
        assert current.starts_at == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
        assert event_count(db, appt.id) == 2

    def test_same_window_is_rejected(self, db, ctx, make_appointment):
        appt = make_appointment()

        with pytest.raises(ValidationError):
            appointment_service.reschedule_appointment(
                db, ctx, "k-noop", appt.id, 1, appt.starts_at, appt.ends_at,
            )
        assert event_count(db, appt.id) == 1

    def test_zero_expected_version_is_invalid(self, db, ctx, make_appointment):
        appt = make_appointment()

        with pytest.raises(ValidationError):
            appointment_service.reschedule_appointment(
                db, ctx, "k-zero", appt.id, 0,
                datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
                datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
            )

    def test_unknown_appointment_is_not_found(self, db, ctx):
        with pytest.raises(AppointmentNotFound):
            appointment_service.reschedule_appointment(
                db, ctx, "k-missing", uuid.uuid4(), 1,
                datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
                datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
            )


class TestCancel:
    def test_cancel_sets_status(self, db, ctx, make_appointment):
        appt = make_appointment()

        result = appointment_service.cancel_appointment(db, ctx, "k1", appt.id, 1, "sick")

        assert result.status == "cancelled"
        assert result.version == 2
        assert event_types(db, appt.id) == ["created", "cancelled"]

    def test_cancel_twice_is_rejected(self, db, ctx, make_appointment):
        appt = make_appointment()
        appointment_service.cancel_appointment(db, ctx, "k1", appt.id, 1)

        with pytest.raises(ValidationError, match="already cancelled"):
            appointment_service.cancel_appointment(db, ctx, "k2", appt.id, 2)
        assert event_count(db, appt.id) == 2


class TestNotes:
    def test_update_notes(self, db, ctx, make_appointment):
        appt = make_appointment()

        result = appointment_service.update_notes(db, ctx, "k1", appt.id, 1, "gate code 4411")

        assert result.notes == "gate code 4411"
        assert event_types(db, appt.id) == ["created", "notes_updated"]

    def test_unchanged_notes_rejected(self, db, ctx, make_appointment):
        appt = make_appointment(notes="same")

        with pytest.raises(ValidationError):
            appointment_service.update_notes(db, ctx, "k1", appt.id, 1, "same")


class TestSoftDelete:
    def test_soft_delete_keeps_row_queryable(self, db, ctx, make_appointment):
        appt = make_appointment()

        result = appointment_service.soft_delete_appointment(db, ctx, "k1", appt.id, 1)

        assert result.deleted_at is not None
        assert appointment_service.get_appointment(db, appt.id) is None
        hidden = appointment_service.get_appointment(db, appt.id, include_deleted=True)
        assert hidden is not None
        assert hidden.version == 2
        assert event_types(db, appt.id) == ["created", "soft_deleted"]

    def test_deleted_appointment_rejects_mutations(self, db, ctx, make_appointment):
        appt = make_appointment()
        appointment_service.soft_delete_appointment(db, ctx, "k1", appt.id, 1)

        with pytest.raises(AppointmentNotFound):
            appointment_service.cancel_appointment(db, ctx, "k2", appt.id, 2)

    def test_restore_clears_deleted_at(self, db, ctx, make_appointment):
        appt = make_appointment()
        appointment_service.soft_delete_appointment(db, ctx, "k1", appt.id, 1)

        result = appointment_service.restore_appointment(db, ctx, "k2", appt.id, 2)

        assert result.deleted_at is None
        assert result.version == 3
        assert appointment_service.get_appointment(db, appt.id) is not None

    def test_restore_live_appointment_rejected(self, db, ctx, make_appointment):
        appt = make_appointment()

        with pytest.raises(ValidationError, match="not deleted"):
            appointment_service.restore_appointment(db, ctx, "k1", appt.id, 1)


# =============================================================================
# Reads
# =============================================================================

class TestReads:
    def test_list_by_day_orders_and_hides_deleted(self, db, ctx, make_appointment):
        late = make_appointment(
            starts_at=datetime(2026, 3, 2, 15, 0, tzinfo=UTC),
            ends_at=datetime(2026, 3, 2, 16, 0, tzinfo=UTC),
        )
        early = make_appointment()
        deleted = make_appointment(
            starts_at=datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
            ends_at=datetime(2026, 3, 2, 13, 0, tzinfo=UTC),
        )
        make_appointment(
            starts_at=datetime(2026, 3, 3, 10, 0, tzinfo=UTC),
            ends_at=datetime(2026, 3, 3, 11, 0, tzinfo=UTC),
        )
        appointment_service.soft_delete_appointment(db, ctx, "del", deleted.id, 1)

        listed = appointment_service.list_appointments(db, date(2026, 3, 2))

        assert [a.id for a in listed] == [early.id, late.id]

    def test_events_ordered_oldest_first(self, db, ctx, make_appointment):
        appt = make_appointment()
        appointment_service.cancel_appointment(db, ctx, "k1", appt.id, 1)
        appointment_service.update_notes(db, ctx, "k2", appt.id, 2, "n")

        events = appointment_service.list_events(db, appt.id)

        assert [e.appointment_version for e in events] == [1, 2, 3]


# =============================================================================
# Lockstep and atomicity
# =============================================================================

class TestLockstep:
    def test_event_count_tracks_version(self, db, ctx, make_appointment):
        appt = make_appointment()
        appointment_service.reschedule_appointment(
            db, ctx, "k1", appt.id, 1,
            datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
        )
        appointment_service.cancel_appointment(db, ctx, "k2", appt.id, 2)
        appointment_service.soft_delete_appointment(db, ctx, "k3", appt.id, 3)
        appointment_service.restore_appointment(db, ctx, "k4", appt.id, 4)

        current = appointment_service.get_appointment(db, appt.id)
        assert current.version == 5
        assert event_count(db, appt.id) == 5

    def test_failed_event_append_rolls_back_snapshot(
        self, db, ctx, make_appointment, monkeypatch
    ):
        appt = make_appointment()

        def broken_append(*args, **kwargs):
            raise OperationalError("INSERT INTO appointment_events", {}, Exception("disk I/O error"))

        monkeypatch.setattr(appointment_service, "append_event", broken_append)

        with pytest.raises(TransactionFailed) as exc_info:
            appointment_service.cancel_appointment(db, ctx, "k-cancel", appt.id, 1)

        assert exc_info.value.retryable is True
        current = appointment_service.get_appointment(db, appt.id)
        assert current.version == 1
        assert current.status == "booked"
        assert event_count(db, appt.id) == 1
        assert db.get(IdempotencyRecord, ("k-cancel", f"POST:/v1/appointments/{appt.id}/cancel")) is None
