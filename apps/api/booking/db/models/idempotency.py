"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from booking.db.base import Base
from booking.db.types import JSONType


class IdempotencyRecord(Base):
    """
    Replay ledger for mutations.

    Keyed by (idempotency_key, operation): the same literal key used against a
    different operation is a distinct entry. A key is permanently bound to the
    payload fingerprint it was first used with.
    """

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        Index("idx_idempotency_keys_expires_at", "expires_at"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    operation: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    response_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
