"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any
from uuid import UUID


def build_log_context(
    *,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
    appointment_id: UUID | str | None = None,
    operation: str | None = None,
    device_id: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict.

    Client names, phones and notes never go into log context; only
    identifiers and routing information do.
    """
    context: dict[str, Any] = {}
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    if appointment_id:
        context["appointment_id"] = str(appointment_id)
    if operation:
        context["operation"] = operation
    if device_id:
        context["device_id"] = device_id
    return context


def configure_logging(level: str = "INFO") -> None:
    """Fallback logging setup for the API process and the CLI."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
