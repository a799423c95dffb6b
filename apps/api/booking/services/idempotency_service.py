"""
Idempotency ledger service.

Maps (idempotency key, operation identity) to the exact result previously
returned, so retried writes replay instead of re-executing.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from booking.core.errors import IdempotencyKeyReused
from booking.db.models import IdempotencyRecord

logger = logging.getLogger(__name__)


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(fields: dict[str, Any]) -> str:
    """SHA256 of the semantically relevant request fields."""
    return hashlib.sha256(canonical_json(fields).encode()).hexdigest()


def resolve(
    db: Session,
    idempotency_key: str,
    operation: str,
    payload_fingerprint: str,
) -> dict[str, Any] | None:
    """
    Look up a prior result for this key and operation.

    Returns:
        The stored result, or None if the key is unused for this operation.

    Raises:
        IdempotencyKeyReused if the key was first used with a different payload
    """
    record = db.execute(
        select(IdempotencyRecord)
        .where(IdempotencyRecord.idempotency_key == idempotency_key)
        .where(IdempotencyRecord.operation == operation)
    ).scalar_one_or_none()

    if record is None:
        return None

    if record.payload_fingerprint != payload_fingerprint:
        raise IdempotencyKeyReused(details={"operation": operation})

    return record.response_json


def store(
    db: Session,
    idempotency_key: str,
    operation: str,
    payload_fingerprint: str,
    result: dict[str, Any],
    now: datetime,
    ttl: timedelta,
) -> IdempotencyRecord:
    """
    Stage the ledger entry inside the caller's transaction.

    A concurrent writer that already committed the same key surfaces as an
    IntegrityError at flush/commit time; the caller rolls back and replays.
    """
    record = IdempotencyRecord(
        idempotency_key=idempotency_key,
        operation=operation,
        payload_fingerprint=payload_fingerprint,
        response_json=result,
        created_at=now,
        expires_at=now + ttl,
    )
    db.add(record)
    db.flush()
    return record


def purge_expired(db: Session, now: datetime) -> int:
    """
    Delete ledger entries past their retention window.

    Only replay convenience is lost: reschedule/cancel/undo retries still hit
    the version check, and creates are pinned by appointments.creation_key.
    """
    result = db.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < now)
    )
    db.commit()
    purged = result.rowcount or 0
    if purged:
        logger.info("Purged %d expired idempotency records", purged)
    return purged
