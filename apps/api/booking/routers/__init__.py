"""API routers."""

from booking.routers.appointments import router as appointments_router
from booking.routers.offline import router as offline_router
from booking.routers.system import router as system_router

__all__ = [
    "appointments_router",
    "offline_router",
    "system_router",
]
