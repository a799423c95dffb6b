"""
HTTP client for the booking API.

Implements the reconciler's executor interface over HTTP so a device can
replay its offline queue against the server. Error envelopes are turned back
into the same typed errors the engine raises; network trouble becomes
TransportFailure.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx

from booking.core.errors import TransportFailure, error_from_payload
from booking.schemas.appointment import (
    AppointmentCreate,
    AppointmentEventRead,
    AppointmentRead,
    SystemModeRead,
)

logger = logging.getLogger(__name__)

# HTTP client settings
HTTPX_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
IDEMPOTENCY_HEADER = "Idempotency-Key"


class BookingApiClient:
    """Synchronous client; one instance per device session."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: httpx.Timeout = HTTPX_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        headers: dict[str, str] | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers=headers,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BookingApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        headers = {IDEMPOTENCY_HEADER: idempotency_key} if idempotency_key else None
        try:
            response = self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportFailure("Booking API timeout.") from exc
        except httpx.TransportError as exc:
            raise TransportFailure(f"Booking API unreachable: {type(exc).__name__}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise TransportFailure(
                f"Booking API returned a non-JSON response ({response.status_code}).",
                details={"status_code": response.status_code},
            ) from exc

        if isinstance(body, dict) and body.get("ok") is True:
            return body.get("data")

        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and "code" in error:
            raise error_from_payload(error)

        # Not one of our envelopes (proxy page, rate limiter, ...)
        raise TransportFailure(
            f"Booking API error {response.status_code}.",
            details={"status_code": response.status_code, "body": response.text[:200]},
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, idempotency_key: str, data: AppointmentCreate) -> AppointmentRead:
        result = self._request(
            "POST", "/v1/appointments",
            json=data.model_dump(mode="json"),
            idempotency_key=idempotency_key,
        )
        return AppointmentRead.model_validate(result)

    def reschedule(
        self,
        idempotency_key: str,
        appointment_id: UUID,
        expected_version: int,
        starts_at: datetime,
        ends_at: datetime,
        reason: str | None = None,
    ) -> AppointmentRead:
        result = self._request(
            "POST", f"/v1/appointments/{appointment_id}/reschedule",
            json={
                "expected_version": expected_version,
                "starts_at": starts_at.isoformat(),
                "ends_at": ends_at.isoformat(),
                "reason": reason,
            },
            idempotency_key=idempotency_key,
        )
        return AppointmentRead.model_validate(result)

    def cancel(
        self,
        idempotency_key: str,
        appointment_id: UUID,
        expected_version: int,
        reason: str | None = None,
    ) -> AppointmentRead:
        result = self._request(
            "POST", f"/v1/appointments/{appointment_id}/cancel",
            json={"expected_version": expected_version, "reason": reason},
            idempotency_key=idempotency_key,
        )
        return AppointmentRead.model_validate(result)

    def undo(
        self,
        idempotency_key: str,
        appointment_id: UUID,
        undo_event_id: UUID,
        expected_version: int,
        reason: str | None = None,
    ) -> AppointmentRead:
        result = self._request(
            "POST", f"/v1/appointments/{appointment_id}/undo",
            json={
                "undo_event_id": str(undo_event_id),
                "expected_version": expected_version,
                "reason": reason,
            },
            idempotency_key=idempotency_key,
        )
        return AppointmentRead.model_validate(result)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_appointment(self, appointment_id: UUID) -> AppointmentRead:
        return AppointmentRead.model_validate(
            self._request("GET", f"/v1/appointments/{appointment_id}")
        )

    def list_events(self, appointment_id: UUID) -> list[AppointmentEventRead]:
        rows = self._request("GET", f"/v1/appointments/{appointment_id}/events")
        return [AppointmentEventRead.model_validate(row) for row in rows]

    def get_system_mode(self) -> SystemModeRead:
        return SystemModeRead.model_validate(self._request("GET", "/v1/health"))
