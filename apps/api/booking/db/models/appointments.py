"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from booking.db.base import Base
from booking.db.enums import ActorType, AppointmentStatus, EventType
from booking.db.guardrails import attach_guardrails
from booking.db.types import JSONType


def _in_list(column: str, values: list[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Appointment(Base):
    """
    Current-state snapshot of one appointment.

    Mutated only by the mutation engine under optimistic-lock discipline:
    every accepted mutation bumps `version` by exactly one and appends exactly
    one AppointmentEvent in the same transaction. Rows are never physically
    deleted; `deleted_at` hides them from normal reads.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_starts_at", "starts_at"),
        Index("idx_appointments_status", "status"),
        Index("idx_appointments_deleted_at", "deleted_at"),
        UniqueConstraint("creation_key", name="uq_appointments_creation_key"),
        CheckConstraint(
            _in_list("status", [s.value for s in AppointmentStatus]),
            name="ck_appointments_status",
        ),
        CheckConstraint("ends_at > starts_at", name="ck_appointments_time_window"),
        CheckConstraint("version >= 1", name="ck_appointments_version_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Subject
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Time window (stored in UTC)
    starts_at: Mapped[datetime] = mapped_column(nullable=False)
    ends_at: Mapped[datetime] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=AppointmentStatus.BOOKED.value,
        server_default=text(f"'{AppointmentStatus.BOOKED.value}'"),
        nullable=False,
    )

    # Optimistic lock counter
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1"), nullable=False
    )

    # Idempotency key of the create that produced this row
    creation_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    events: Mapped[list["AppointmentEvent"]] = relationship(
        back_populates="appointment",
        order_by="AppointmentEvent.created_at",
        passive_deletes="all",
    )


class AppointmentEvent(Base):
    """
    Immutable, append-only record of one appointment state transition.

    `payload` holds before/after snapshots of the mutable fields so that the
    change can be replayed or compensated. Undo appends a new event pointing
    back at its target (`undone_event_id`); the target gets its
    `superseded_by_event_id` assigned exactly once.
    """

    __tablename__ = "appointment_events"
    __table_args__ = (
        Index("idx_appointment_events_appointment_created", "appointment_id", "created_at"),
        UniqueConstraint(
            "appointment_id", "created_at", "event_type", name="uq_appointment_events_dedupe"
        ),
        UniqueConstraint("undone_event_id", name="uq_appointment_events_undone"),
        UniqueConstraint("superseded_by_event_id", name="uq_appointment_events_superseded"),
        CheckConstraint(
            _in_list("event_type", [e.value for e in EventType]),
            name="ck_appointment_events_event_type",
        ),
        CheckConstraint(
            _in_list("actor_type", [a.value for a in ActorType]),
            name="ck_appointment_events_actor_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="RESTRICT"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_type: Mapped[str] = mapped_column(
        String(10), default=ActorType.OWNER.value, nullable=False
    )
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    # Snapshot version produced by this event (lockstep with appointments.version)
    appointment_version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Compensation chain
    undone_event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("appointment_events.id", ondelete="RESTRICT"), nullable=True
    )
    superseded_by_event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("appointment_events.id", ondelete="RESTRICT"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    # Relationships
    appointment: Mapped["Appointment"] = relationship(back_populates="events")


attach_guardrails(Appointment.__table__)
attach_guardrails(AppointmentEvent.__table__)
