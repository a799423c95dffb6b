"""FastAPI dependencies for database access, the mode gate and mutation context."""

from datetime import timedelta
from typing import Generator

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from booking.core.clock import Clock, system_clock
from booking.core.config import settings
from booking.core.errors import ValidationError
from booking.core.mode_gate import SystemModeGate
from booking.db.enums import ActorType
from booking.db.session import SessionLocal
from booking.services.appointment_service import MutationContext
from booking.services.reconcile_service import SingleFlight

IDEMPOTENCY_HEADER = "Idempotency-Key"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return system_clock


def get_mode_gate(request: Request) -> SystemModeGate:
    """The process-wide gate owned by the app."""
    return request.app.state.mode_gate


def get_single_flight(request: Request) -> SingleFlight:
    return request.app.state.single_flight


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def require_idempotency_key(
    idempotency_key: str | None = Header(None, alias=IDEMPOTENCY_HEADER),
) -> str:
    """
    Require the Idempotency-Key header on mutations.

    Raises:
        ValidationError: header missing, blank or too long
    """
    if idempotency_key is None or not idempotency_key.strip():
        raise ValidationError(f"Missing {IDEMPOTENCY_HEADER} header.")
    if len(idempotency_key) > 255:
        raise ValidationError(f"{IDEMPOTENCY_HEADER} must be at most 255 characters.")
    return idempotency_key


def get_mutation_context(
    gate: SystemModeGate = Depends(get_mode_gate),
    clock: Clock = Depends(get_clock),
) -> MutationContext:
    return MutationContext(
        gate=gate,
        clock=clock,
        actor_type=ActorType.OWNER,
        idempotency_ttl=timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS),
    )
