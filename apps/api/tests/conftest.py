"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database file per test (real commits and rollbacks)
- A ticking clock so every timestamp is distinct and deterministic
- Mode gate, mutation context and single-flight registry
- HTTPX AsyncClient wired to the app with those collaborators
"""
import itertools
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Settings are read at import time; point them at a throwaway database
_TEST_DB_DIR = tempfile.mkdtemp(prefix="booking-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR}/booking.db"
os.environ["RATE_LIMIT_API"] = "0"
os.environ["HEALTH_PROBE_ENABLED"] = "false"
os.environ["ENV"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from booking.main import app
from booking.core.deps import get_clock, get_db
from booking.core.mode_gate import SystemModeGate
from booking.db.base import Base
from booking.db.engine import build_engine
import booking.db.models  # noqa: F401
from booking.schemas.appointment import AppointmentCreate, AppointmentRead
from booking.services import appointment_service
from booking.services.appointment_service import MutationContext
from booking.services.reconcile_service import SingleFlight


# =============================================================================
# Clock
# =============================================================================

START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class TickingClock:
    """Deterministic clock: every now() returns a new instant one step later."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            value = self.current
            self.current += self.step
            return value

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self.current += delta


@pytest.fixture(scope="function")
def clock() -> TickingClock:
    return TickingClock()


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def engine(tmp_path) -> Generator[Engine, None, None]:
    """
    Engine on a per-test SQLite file with every table and trigger.

    The engine under test commits and rolls back on its own, so tests use a
    real database file instead of an outer savepoint.
    """
    test_engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Engine collaborators
# =============================================================================

@pytest.fixture(scope="function")
def gate(clock: TickingClock) -> SystemModeGate:
    return SystemModeGate(clock=clock)


@pytest.fixture(scope="function")
def ctx(gate: SystemModeGate, clock: TickingClock) -> MutationContext:
    return MutationContext(gate=gate, clock=clock)


@pytest.fixture(scope="function")
def flight(clock: TickingClock) -> SingleFlight:
    return SingleFlight(clock)


def appointment_fields(**overrides) -> dict:
    """Valid create payload: 10:00-11:00 UTC on the test day."""
    fields = {
        "client_name": "Dana Client",
        "client_phone": "+1-555-0100",
        "service_name": "Haircut",
        "starts_at": datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
        "ends_at": datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc),
        "notes": None,
    }
    fields.update(overrides)
    return fields


@pytest.fixture(scope="function")
def appointment_data():
    """Builder for valid create payload dicts."""
    return appointment_fields


@pytest.fixture(scope="function")
def make_appointment(db: Session, ctx: MutationContext):
    """Factory creating appointments through the engine."""
    counter = itertools.count(1)

    def _make(idempotency_key: str | None = None, **overrides) -> AppointmentRead:
        key = idempotency_key or f"create-{next(counter)}"
        data = AppointmentCreate(**appointment_fields(**overrides))
        return appointment_service.create_appointment(db, ctx, key, data)

    return _make


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(
    session_factory: sessionmaker,
    gate: SystemModeGate,
    flight: SingleFlight,
    clock: TickingClock,
) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app, using the test database, gate and clock."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    previous_gate, previous_flight = app.state.mode_gate, app.state.single_flight
    app.state.mode_gate = gate
    app.state.single_flight = flight

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
    app.state.mode_gate = previous_gate
    app.state.single_flight = previous_flight
