"""Rate limiting configuration for the booking API."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from booking.core.config import settings

# Single-process service: in-memory counters
DEFAULT_LIMITS = (
    []
    if settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    default_limits=DEFAULT_LIMITS,
)
