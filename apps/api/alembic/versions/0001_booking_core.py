"""Booking core: snapshots, append-only events, idempotency ledger

Revision ID: 0001_booking_core
Revises:
Create Date: 2026-10-18

Tables:
- appointments: current-state snapshot with optimistic lock version
- appointment_events: append-only event log with compensation chain
- idempotency_keys: replay ledger keyed by (idempotency_key, operation)

Triggers forbid hard deletes on appointments and any event mutation other
than the one-time assignment of superseded_by_event_id.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from booking.db.guardrails import guardrail_statements


# revision identifiers, used by Alembic.
revision = "0001_booking_core"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "appointments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("client_name", sa.String(255), nullable=False),
        sa.Column("client_phone", sa.String(40), nullable=True),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'booked'"), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("creation_key", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("creation_key", name="uq_appointments_creation_key"),
        sa.CheckConstraint("status IN ('booked', 'cancelled')", name="ck_appointments_status"),
        sa.CheckConstraint("ends_at > starts_at", name="ck_appointments_time_window"),
        sa.CheckConstraint("version >= 1", name="ck_appointments_version_positive"),
    )
    op.create_index("idx_appointments_starts_at", "appointments", ["starts_at"])
    op.create_index("idx_appointments_status", "appointments", ["status"])
    op.create_index("idx_appointments_deleted_at", "appointments", ["deleted_at"])

    op.create_table(
        "appointment_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "appointment_id",
            sa.Uuid(),
            sa.ForeignKey("appointments.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("actor_type", sa.String(10), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("appointment_version", sa.Integer(), nullable=False),
        sa.Column(
            "undone_event_id",
            sa.Uuid(),
            sa.ForeignKey("appointment_events.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "superseded_by_event_id",
            sa.Uuid(),
            sa.ForeignKey("appointment_events.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "appointment_id", "created_at", "event_type", name="uq_appointment_events_dedupe"
        ),
        sa.UniqueConstraint("undone_event_id", name="uq_appointment_events_undone"),
        sa.UniqueConstraint("superseded_by_event_id", name="uq_appointment_events_superseded"),
        sa.CheckConstraint(
            "event_type IN ('created', 'rescheduled', 'cancelled', 'uncancelled', "
            "'notes_updated', 'soft_deleted', 'restored', 'undo_applied')",
            name="ck_appointment_events_event_type",
        ),
        sa.CheckConstraint(
            "actor_type IN ('owner', 'system')", name="ck_appointment_events_actor_type"
        ),
    )
    op.create_index(
        "idx_appointment_events_appointment_created",
        "appointment_events",
        ["appointment_id", "created_at"],
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("idempotency_key", sa.String(255), primary_key=True),
        sa.Column("operation", sa.String(255), primary_key=True),
        sa.Column("payload_fingerprint", sa.String(64), nullable=False),
        sa.Column("response_json", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])

    for statement in guardrail_statements(op.get_bind().dialect.name):
        op.execute(statement)


def downgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_prevent_event_mutation ON appointment_events")
        op.execute("DROP TRIGGER IF EXISTS trg_prevent_appointment_delete ON appointments")
        op.execute("DROP FUNCTION IF EXISTS prevent_event_mutation()")
        op.execute("DROP FUNCTION IF EXISTS prevent_appointment_hard_delete()")
    elif dialect == "sqlite":
        op.execute("DROP TRIGGER IF EXISTS trg_prevent_event_update")
        op.execute("DROP TRIGGER IF EXISTS trg_prevent_event_delete")
        op.execute("DROP TRIGGER IF EXISTS trg_prevent_appointment_delete")

    op.drop_index("idx_idempotency_keys_expires_at", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("idx_appointment_events_appointment_created", table_name="appointment_events")
    op.drop_table("appointment_events")
    op.drop_index("idx_appointments_deleted_at", table_name="appointments")
    op.drop_index("idx_appointments_status", table_name="appointments")
    op.drop_index("idx_appointments_starts_at", table_name="appointments")
    op.drop_table("appointments")
