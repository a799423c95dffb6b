"""
Subsystem health probes feeding the system mode gate.

Each probe returns a CheckResult; a probe that raises is reported as failed.
Results of one probe round are published to the gate in a single step so
readers never observe a half-updated set of checks.
"""

import logging
from typing import Callable

import anyio
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session, aliased, sessionmaker

from booking.core.clock import Clock, system_clock
from booking.core.config import settings
from booking.core.mode_gate import CheckResult, ModeSnapshot, SystemModeGate
from booking.db.enums import CheckStatus, HealthCheckName
from booking.db.models import Appointment, AppointmentEvent
from booking.services.reconcile_service import SingleFlight

logger = logging.getLogger(__name__)


def check_database(db: Session, clock: Clock = system_clock) -> CheckResult:
    """Data-store reachability."""
    db.execute(text("SELECT 1"))
    return CheckResult(CheckStatus.ONLINE, None, clock.now())


def find_lockstep_violations(db: Session) -> list[str]:
    """Appointment ids whose event count differs from their version."""
    event_counts = (
        select(
            AppointmentEvent.appointment_id.label("appointment_id"),
            func.count(AppointmentEvent.id).label("event_count"),
        )
        .group_by(AppointmentEvent.appointment_id)
        .subquery()
    )
    rows = db.execute(
        select(Appointment.id)
        .outerjoin(event_counts, event_counts.c.appointment_id == Appointment.id)
        .where(func.coalesce(event_counts.c.event_count, 0) != Appointment.version)
    ).scalars().all()
    return [str(appointment_id) for appointment_id in rows]


def find_broken_chains(db: Session) -> list[str]:
    """
    Event ids whose compensation links don't agree.

    A superseded event must be pointed back at by exactly the event that
    superseded it (undone_event_id), on the same appointment.
    """
    compensation = aliased(AppointmentEvent)
    rows = db.execute(
        select(AppointmentEvent.id)
        .outerjoin(compensation, compensation.id == AppointmentEvent.superseded_by_event_id)
        .where(AppointmentEvent.superseded_by_event_id.is_not(None))
        .where(
            (compensation.id.is_(None))
            | compensation.undone_event_id.is_distinct_from(AppointmentEvent.id)
            | (compensation.appointment_id != AppointmentEvent.appointment_id)
        )
    ).scalars().all()
    return [str(event_id) for event_id in rows]


def check_event_log(db: Session, clock: Clock = system_clock) -> CheckResult:
    """Event-log integrity: version/event lockstep and compensation chains."""
    lockstep = find_lockstep_violations(db)
    chains = find_broken_chains(db)
    if lockstep or chains:
        parts = []
        if lockstep:
            parts.append(f"{len(lockstep)} appointment(s) out of lockstep")
        if chains:
            parts.append(f"{len(chains)} broken compensation link(s)")
        logger.error(
            "Event log integrity check failed: lockstep=%s chains=%s", lockstep[:10], chains[:10]
        )
        return CheckResult(CheckStatus.FAILED, "; ".join(parts), clock.now())
    return CheckResult(CheckStatus.ONLINE, None, clock.now())


def check_queue(
    flight: SingleFlight,
    stale_after_seconds: float | None = None,
    clock: Clock = system_clock,
) -> CheckResult:
    """Queue-processor health: no reconciliation pass stuck on its lock."""
    if stale_after_seconds is None:
        stale_after_seconds = settings.QUEUE_STALE_SECONDS
    stale = {
        device_id: age
        for device_id, age in flight.running_ages().items()
        if age > stale_after_seconds
    }
    if stale:
        oldest = max(stale.values())
        return CheckResult(
            CheckStatus.DEGRADED,
            f"{len(stale)} reconciliation pass(es) running longer than "
            f"{stale_after_seconds:.0f}s (oldest {oldest:.0f}s)",
            clock.now(),
        )
    return CheckResult(CheckStatus.ONLINE, None, clock.now())


def _guarded(
    name: HealthCheckName,
    probe: Callable[[], CheckResult],
    clock: Clock,
) -> CheckResult:
    try:
        return probe()
    except Exception as exc:
        logger.exception("Health probe %s raised", name.value)
        return CheckResult(CheckStatus.FAILED, f"{type(exc).__name__}: {exc}", clock.now())


def run_probes(
    session_factory: sessionmaker,
    gate: SystemModeGate,
    flight: SingleFlight,
    clock: Clock = system_clock,
) -> ModeSnapshot:
    """Run every probe once and publish the results together."""
    db = session_factory()
    try:
        results = {
            HealthCheckName.DATABASE.value: _guarded(
                HealthCheckName.DATABASE, lambda: check_database(db, clock), clock
            ),
        }
        db.rollback()
        results[HealthCheckName.EVENT_LOG.value] = _guarded(
            HealthCheckName.EVENT_LOG, lambda: check_event_log(db, clock), clock
        )
        db.rollback()
    finally:
        db.close()
    results[HealthCheckName.QUEUE.value] = _guarded(
        HealthCheckName.QUEUE, lambda: check_queue(flight, clock=clock), clock
    )
    return gate.publish(results)


async def run_probe_loop(
    session_factory: sessionmaker,
    gate: SystemModeGate,
    flight: SingleFlight,
    interval_seconds: float,
) -> None:
    """Refresh the gate on a fixed interval until cancelled."""
    logger.info("Health probe loop started (every %.0fs)", interval_seconds)
    while True:
        snapshot = await anyio.to_thread.run_sync(run_probes, session_factory, gate, flight)
        logger.debug("Probe round complete: %s", snapshot.mode.value)
        await anyio.sleep(interval_seconds)
