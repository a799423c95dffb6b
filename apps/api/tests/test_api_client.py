"""
Tests for the HTTP client, against httpx.MockTransport.
"""
import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from booking.client.api_client import BookingApiClient
from booking.core.errors import (
    AlreadyUndone,
    BookingError,
    IdempotencyKeyReused,
    SystemUnsafe,
    TransportFailure,
    VersionConflict,
)
from booking.schemas.appointment import AppointmentCreate

UTC = timezone.utc
APPOINTMENT_ID = uuid.UUID("5b1f0c52-8d7e-4a38-9d53-0c4d9b0a7e11")


def appointment_json(version=1, status="booked"):
    return {
        "id": str(APPOINTMENT_ID),
        "client_name": "Dana Client",
        "client_phone": None,
        "service_name": "Haircut",
        "starts_at": "2026-03-02T10:00:00Z",
        "ends_at": "2026-03-02T11:00:00Z",
        "status": status,
        "notes": None,
        "version": version,
        "created_at": "2026-03-02T08:00:00Z",
        "updated_at": "2026-03-02T08:00:00Z",
        "deleted_at": None,
    }


def error_json(code, message="nope", retryable=False, details=None):
    error = {"code": code, "message": message, "retryable": retryable}
    if details is not None:
        error["details"] = details
    return {"ok": False, "error": error, "request_id": "req-1"}


def make_client(handler) -> BookingApiClient:
    return BookingApiClient("http://booking.test", transport=httpx.MockTransport(handler))


class TestRequests:
    def test_create_sends_key_and_body(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"ok": True, "data": appointment_json()})

        with make_client(handler) as client:
            result = client.create("k-1", AppointmentCreate(
                client_name="Dana Client",
                service_name="Haircut",
                starts_at=datetime(2026, 3, 2, 10, 0, tzinfo=UTC),
                ends_at=datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
            ))

        assert seen["path"] == "/v1/appointments"
        assert seen["key"] == "k-1"
        assert seen["body"]["client_name"] == "Dana Client"
        assert result.id == APPOINTMENT_ID

    def test_reschedule_posts_versioned_body(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "data": appointment_json(version=2)})

        with make_client(handler) as client:
            result = client.reschedule(
                "k-2", APPOINTMENT_ID, 1,
                datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
                datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
            )

        assert seen["path"] == f"/v1/appointments/{APPOINTMENT_ID}/reschedule"
        assert seen["body"]["expected_version"] == 1
        assert seen["body"]["starts_at"] == "2026-03-02T11:00:00+00:00"
        assert result.version == 2

    def test_reads_do_not_send_key(self):
        def handler(request):
            assert "Idempotency-Key" not in request.headers
            return httpx.Response(200, json={"ok": True, "data": appointment_json()})

        with make_client(handler) as client:
            assert client.get_appointment(APPOINTMENT_ID).version == 1

    def test_system_mode(self):
        def handler(request):
            return httpx.Response(200, json={"ok": True, "data": {
                "status": "degraded",
                "checks": {"database": "online", "event_log": "online", "queue": "degraded"},
                "details": {},
                "updated_at": None,
            }})

        with make_client(handler) as client:
            assert client.get_system_mode().status == "degraded"


class TestErrorMapping:
    def test_version_conflict(self):
        def handler(request):
            return httpx.Response(409, json=error_json(
                "VERSION_CONFLICT", retryable=True,
                details={"expected_version": 1, "current_version": 3},
            ))

        with make_client(handler) as client:
            with pytest.raises(VersionConflict) as exc_info:
                client.cancel("k", APPOINTMENT_ID, 1)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 3

    def test_already_undone_keeps_snapshot(self):
        def handler(request):
            return httpx.Response(409, json=error_json(
                "ALREADY_UNDONE",
                details={
                    "target_event_id": str(uuid.uuid4()),
                    "appointment": appointment_json(version=4),
                },
            ))

        with make_client(handler) as client:
            with pytest.raises(AlreadyUndone) as exc_info:
                client.undo("k", APPOINTMENT_ID, uuid.uuid4(), 3)

        assert exc_info.value.appointment["version"] == 4

    @pytest.mark.parametrize(
        "code,error_cls,status",
        [
            ("SYSTEM_UNSAFE", SystemUnsafe, 503),
            ("IDEMPOTENCY_KEY_REUSED", IdempotencyKeyReused, 409),
        ],
    )
    def test_typed_errors(self, code, error_cls, status):
        def handler(request):
            return httpx.Response(status, json=error_json(code))

        with make_client(handler) as client:
            with pytest.raises(error_cls):
                client.cancel("k", APPOINTMENT_ID, 1)

    def test_unknown_code_keeps_code(self):
        def handler(request):
            return httpx.Response(429, json=error_json("RATE_LIMITED", retryable=True))

        with make_client(handler) as client:
            with pytest.raises(BookingError) as exc_info:
                client.cancel("k", APPOINTMENT_ID, 1)

        assert exc_info.value.code == "RATE_LIMITED"
        assert exc_info.value.retryable is True


class TestTransportFailures:
    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with make_client(handler) as client:
            with pytest.raises(TransportFailure) as exc_info:
                client.get_appointment(APPOINTMENT_ID)

        assert exc_info.value.retryable is True

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with make_client(handler) as client:
            with pytest.raises(TransportFailure, match="timeout"):
                client.get_appointment(APPOINTMENT_ID)

    def test_non_json_response(self):
        def handler(request):
            return httpx.Response(502, text="<html>Bad gateway</html>")

        with make_client(handler) as client:
            with pytest.raises(TransportFailure) as exc_info:
                client.get_appointment(APPOINTMENT_ID)

        assert exc_info.value.details["status_code"] == 502

    def test_foreign_json_envelope(self):
        def handler(request):
            return httpx.Response(404, json={"detail": "Not Found"})

        with make_client(handler) as client:
            with pytest.raises(TransportFailure):
                client.get_appointment(APPOINTMENT_ID)
