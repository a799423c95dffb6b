"""Database-level guardrails for the snapshot and event tables.

- appointments rows are never physically deleted (soft delete only)
- appointment_events is append-only; the single permitted UPDATE is the
  one-time null -> value assignment of superseded_by_event_id

The same statements are attached to table creation (tests, dev) and
replayed by the Alembic migration.
"""

from sqlalchemy import DDL, Table, event

SQLITE_APPOINTMENT_GUARDS = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_prevent_appointment_delete
    BEFORE DELETE ON appointments
    BEGIN
        SELECT RAISE(ABORT, 'Hard deletes are forbidden. Use deleted_at soft delete instead.');
    END
    """,
]

SQLITE_EVENT_GUARDS = [
    """
    CREATE TRIGGER IF NOT EXISTS trg_prevent_event_delete
    BEFORE DELETE ON appointment_events
    BEGIN
        SELECT RAISE(ABORT, 'appointment_events is append-only. Delete forbidden.');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_prevent_event_update
    BEFORE UPDATE ON appointment_events
    WHEN NOT (
        OLD.superseded_by_event_id IS NULL
        AND NEW.superseded_by_event_id IS NOT NULL
        AND NEW.id IS OLD.id
        AND NEW.appointment_id IS OLD.appointment_id
        AND NEW.event_type IS OLD.event_type
        AND NEW.actor_type IS OLD.actor_type
        AND NEW.actor_id IS OLD.actor_id
        AND NEW.reason IS OLD.reason
        AND NEW.payload IS OLD.payload
        AND NEW.appointment_version IS OLD.appointment_version
        AND NEW.undone_event_id IS OLD.undone_event_id
        AND NEW.created_at IS OLD.created_at
    )
    BEGIN
        SELECT RAISE(ABORT, 'appointment_events is append-only. Update forbidden.');
    END
    """,
]

POSTGRES_APPOINTMENT_GUARDS = [
    """
    CREATE OR REPLACE FUNCTION prevent_appointment_hard_delete()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'Hard deletes are forbidden. Use deleted_at soft delete instead.';
    END;
    $$
    """,
    "DROP TRIGGER IF EXISTS trg_prevent_appointment_delete ON appointments",
    """
    CREATE TRIGGER trg_prevent_appointment_delete
    BEFORE DELETE ON appointments
    FOR EACH ROW EXECUTE FUNCTION prevent_appointment_hard_delete()
    """,
]

POSTGRES_EVENT_GUARDS = [
    """
    CREATE OR REPLACE FUNCTION prevent_event_mutation()
    RETURNS trigger
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF TG_OP = 'UPDATE'
           AND OLD.superseded_by_event_id IS NULL
           AND NEW.superseded_by_event_id IS NOT NULL
           AND (to_jsonb(NEW) - 'superseded_by_event_id') = (to_jsonb(OLD) - 'superseded_by_event_id')
        THEN
            RETURN NEW;
        END IF;
        RAISE EXCEPTION 'appointment_events is append-only. Update/Delete forbidden.';
    END;
    $$
    """,
    "DROP TRIGGER IF EXISTS trg_prevent_event_mutation ON appointment_events",
    """
    CREATE TRIGGER trg_prevent_event_mutation
    BEFORE UPDATE OR DELETE ON appointment_events
    FOR EACH ROW EXECUTE FUNCTION prevent_event_mutation()
    """,
]

GUARDS_BY_TABLE = {
    "appointments": {
        "sqlite": SQLITE_APPOINTMENT_GUARDS,
        "postgresql": POSTGRES_APPOINTMENT_GUARDS,
    },
    "appointment_events": {
        "sqlite": SQLITE_EVENT_GUARDS,
        "postgresql": POSTGRES_EVENT_GUARDS,
    },
}


def attach_guardrails(table: Table) -> None:
    """Install the table's triggers right after CREATE TABLE."""
    for dialect, statements in GUARDS_BY_TABLE[table.name].items():
        for statement in statements:
            event.listen(table, "after_create", DDL(statement).execute_if(dialect=dialect))


def guardrail_statements(dialect: str) -> list[str]:
    """All guardrail statements for a dialect, in install order."""
    statements: list[str] = []
    for guards in GUARDS_BY_TABLE.values():
        statements.extend(guards.get(dialect, []))
    return statements
