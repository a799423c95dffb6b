"""Response envelopes shared by every endpoint."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    """Success envelope: {"ok": true, "data": ...}."""
    ok: bool = True
    data: T


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: bool
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    """Failure envelope: {"ok": false, "error": {...}, "request_id": ...}."""
    ok: bool = False
    error: ErrorBody
    request_id: str | None = None
