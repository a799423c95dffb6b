"""CLI tools for booking operations and offline device sync."""

import uuid

import click

from booking.core.clock import system_clock
from booking.core.errors import BookingError


@click.group()
def cli():
    """Booking CLI tools."""
    pass


# =============================================================================
# Server-side operations
# =============================================================================

@cli.command()
def probe():
    """
    Run every health probe once and print the resulting system mode.

    Exits non-zero when the system is unsafe.

    Example:
        python -m booking.cli probe
    """
    from booking.core.mode_gate import SystemModeGate
    from booking.db.enums import SystemMode
    from booking.db.session import SessionLocal
    from booking.services import health_service
    from booking.services.reconcile_service import single_flight

    snapshot = health_service.run_probes(SessionLocal, SystemModeGate(), single_flight)
    click.echo(f"Mode: {snapshot.mode.value}")
    for name, result in snapshot.checks.items():
        line = f"  {name}: {result.status.value}"
        if result.detail:
            line += f" ({result.detail})"
        click.echo(line)
    if snapshot.mode == SystemMode.UNSAFE:
        raise SystemExit(1)


@cli.command()
def purge_idempotency():
    """
    Delete idempotency records past their retention window.

    Example:
        python -m booking.cli purge-idempotency
    """
    from booking.db.session import SessionLocal
    from booking.services import idempotency_service

    db = SessionLocal()
    try:
        purged = idempotency_service.purge_expired(db, system_clock.now())
        click.echo(f"✓ Purged {purged} expired idempotency record(s)")
    finally:
        db.close()


@cli.command()
@click.argument("appointment_id", type=click.UUID)
def events(appointment_id: uuid.UUID):
    """
    Print the event history of an appointment, oldest first.

    Example:
        python -m booking.cli events 2f1c...
    """
    from booking.db.session import SessionLocal
    from booking.services import appointment_service

    db = SessionLocal()
    try:
        appointment = appointment_service.get_appointment(db, appointment_id, include_deleted=True)
        if appointment is None:
            click.echo(f"❌ Appointment not found: {appointment_id}")
            raise SystemExit(1)

        click.echo(
            f"Appointment {appointment.id} v{appointment.version} "
            f"[{appointment.status}{', deleted' if appointment.deleted_at else ''}]"
        )
        for event in appointment_service.list_events(db, appointment_id):
            line = (
                f"  {event.created_at.isoformat()}  v{event.appointment_version:<3} "
                f"{event.event_type:<14} {event.id}"
            )
            if event.undone_event_id:
                line += f"  undoes {event.undone_event_id}"
            if event.superseded_by_event_id:
                line += f"  undone by {event.superseded_by_event_id}"
            click.echo(line)
    finally:
        db.close()


# =============================================================================
# Device-side offline queue
# =============================================================================

def _open_store(queue_db: str, device_id: str):
    from booking.client.offline_queue import OfflineQueueStore

    return OfflineQueueStore(f"sqlite:///{queue_db}", device_id)


@cli.command()
@click.option("--queue-db", required=True, type=click.Path(dir_okay=False), help="Local queue SQLite file")
@click.option("--base-url", required=True, help="Booking API base URL")
@click.option("--device-id", required=True, help="This device's id")
def sync(queue_db: str, base_url: str, device_id: str):
    """
    Drain the local offline queue against the server (one pass).

    Example:
        python -m booking.cli sync --queue-db ~/.booking/queue.db --base-url https://api.example.com --device-id tablet-1
    """
    from booking.client.api_client import BookingApiClient
    from booking.client.sync import OfflineSync

    store = _open_store(queue_db, device_id)
    try:
        with BookingApiClient(base_url) as client:
            report = OfflineSync(store, client).on_reconnect()
    finally:
        store.close()

    if report is None:
        click.echo("Another sync pass is already running for this device")
        return

    click.echo(
        f"✓ Sync done: {len(report.confirmed)} confirmed, "
        f"{len(report.conflict)} conflict, {len(report.failed)} failed"
    )
    for outcome in report.outcomes():
        line = f"  {outcome.local_id} {outcome.type.value:<12} {outcome.status.value}"
        if outcome.error and outcome.status.value != "confirmed":
            line += f"  {outcome.error.get('code')}: {outcome.error.get('message')}"
        click.echo(line)


@cli.command()
@click.option("--queue-db", required=True, type=click.Path(dir_okay=False), help="Local queue SQLite file")
@click.option("--device-id", required=True, help="This device's id")
def queue_list(queue_db: str, device_id: str):
    """List local queue items in FIFO order."""
    store = _open_store(queue_db, device_id)
    try:
        for item in store.items():
            line = (
                f"{item.created_at.isoformat()}  {item.local_id}  {item.type.value:<12} "
                f"{item.status.value:<10} retries={item.retry_count}"
            )
            if item.last_error:
                line += f"  {item.last_error}"
            click.echo(line)
    finally:
        store.close()


@cli.command()
@click.argument("local_id")
@click.option("--queue-db", required=True, type=click.Path(dir_okay=False), help="Local queue SQLite file")
@click.option("--base-url", required=True, help="Booking API base URL")
@click.option("--device-id", required=True, help="This device's id")
@click.option(
    "--action",
    type=click.Choice(["discard", "reapply"]),
    required=True,
    help="discard keeps the server state; reapply re-queues against the current version",
)
def resolve(local_id: str, queue_db: str, base_url: str, device_id: str, action: str):
    """
    Resolve a conflicted (or otherwise terminal) queue item.

    Example:
        python -m booking.cli resolve 9ab3... --action reapply --queue-db q.db --base-url ... --device-id tablet-1
    """
    from booking.client.api_client import BookingApiClient
    from booking.client.sync import OfflineSync

    store = _open_store(queue_db, device_id)
    try:
        with BookingApiClient(base_url) as client:
            driver = OfflineSync(store, client)
            if action == "discard":
                item = driver.discard(local_id)
                click.echo(f"✓ Discarded {item.type.value} item {item.local_id}")
            else:
                item = driver.reapply(local_id)
                click.echo(
                    f"✓ Re-queued {item.type.value} item {item.local_id} "
                    f"at version {item.expected_version}"
                )
    except BookingError as e:
        click.echo(f"❌ {e.code}: {e.message}")
        raise SystemExit(1)
    finally:
        store.close()


if __name__ == "__main__":
    cli()
