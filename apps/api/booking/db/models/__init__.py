"""SQLAlchemy ORM models."""

from booking.db.models.appointments import Appointment, AppointmentEvent
from booking.db.models.idempotency import IdempotencyRecord

__all__ = ["Appointment", "AppointmentEvent", "IdempotencyRecord"]
