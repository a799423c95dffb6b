"""
Durable client-side offline queue.

Locally captured intents live in a small SQLite file on the device until the
reconciler gives each one a terminal status. Nothing leaves the queue
without an explicit user action (discard), and conflicts are only resolved
by the user choosing discard or reapply.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator

from sqlalchemy import Index, Integer, String, Text, Uuid, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from booking.core.clock import Clock, system_clock
from booking.core.errors import ReconciliationInProgress, ValidationError
from booking.db.engine import build_engine
from booking.db.enums import (
    CLEARABLE_STATUSES,
    RECONCILABLE_STATUSES,
    QueueItemStatus,
    QueueItemType,
)
from booking.db.types import JSONType, UTCDateTime
from booking.schemas.appointment import AppointmentRead
from booking.schemas.offline import ItemOutcome, QueueItem

logger = logging.getLogger(__name__)

DEFAULT_HOLD_TTL = timedelta(minutes=60)
# A claim older than this belongs to a pass that died without releasing it
DEFAULT_CLAIM_TTL = timedelta(minutes=15)
INTERRUPTED_MESSAGE = "Sync was interrupted before the server answered."


class LocalBase(DeclarativeBase):
    """Device-local tables; never part of the server schema."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class OfflineQueueRow(LocalBase):
    __tablename__ = "offline_queue_items"
    __table_args__ = (
        Index("idx_offline_queue_status_created", "status", "created_at"),
    )

    local_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Server id; filled in for create_hold once confirmed
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    target_local_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    expected_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=QueueItemStatus.QUEUED.value, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class CachedSnapshot(LocalBase):
    """Last authoritative snapshot seen for an appointment."""

    __tablename__ = "offline_snapshots"

    appointment_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    refreshed_at: Mapped[datetime] = mapped_column(nullable=False)


class SyncClaim(LocalBase):
    """Held by the one sync pass currently draining a device's queue."""

    __tablename__ = "offline_sync_claims"

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(nullable=False)


def _to_item(row: OfflineQueueRow) -> QueueItem:
    return QueueItem.model_validate(row)


class OfflineQueueStore:
    """Queue persistence for one device."""

    def __init__(
        self,
        database_url: str,
        device_id: str,
        *,
        clock: Clock = system_clock,
        hold_ttl: timedelta = DEFAULT_HOLD_TTL,
        claim_ttl: timedelta = DEFAULT_CLAIM_TTL,
    ):
        self.device_id = device_id
        self._clock = clock
        self._hold_ttl = hold_ttl
        self._claim_ttl = claim_ttl
        self._engine = build_engine(database_url)
        LocalBase.metadata.create_all(self._engine)
        self._session = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)

    def close(self) -> None:
        self._engine.dispose()

    def _get_row(self, db: Session, local_id: str) -> OfflineQueueRow:
        row = db.get(OfflineQueueRow, local_id)
        if row is None or row.device_id != self.device_id:
            raise ValidationError(
                "Queue item not found.", details={"local_id": local_id}
            )
        return row

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def enqueue(
        self,
        item_type: QueueItemType,
        payload: dict[str, Any],
        *,
        appointment_id: uuid.UUID | None = None,
        target_local_id: str | None = None,
        expected_version: int | None = None,
    ) -> QueueItem:
        """Capture an intent locally with a stable idempotency key."""
        now = self._clock.now()
        payload = dict(payload)
        if item_type == QueueItemType.CREATE_HOLD:
            payload.setdefault("hold_expires_at", (now + self._hold_ttl).isoformat())
        elif appointment_id is None and target_local_id is None:
            raise ValidationError(f"{item_type.value} needs appointment_id or target_local_id.")
        elif expected_version is None:
            raise ValidationError(f"{item_type.value} needs expected_version.")

        row = OfflineQueueRow(
            local_id=uuid.uuid4().hex,
            device_id=self.device_id,
            type=item_type.value,
            appointment_id=appointment_id,
            target_local_id=target_local_id,
            payload=payload,
            expected_version=expected_version,
            idempotency_key=str(uuid.uuid4()),
            status=QueueItemStatus.QUEUED.value,
            retry_count=0,
            created_at=now,
        )
        with self._session() as db:
            db.add(row)
            db.commit()
            item = _to_item(row)
        logger.info("Queued %s item %s", item_type.value, item.local_id)
        return item

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, local_id: str) -> QueueItem:
        with self._session() as db:
            return _to_item(self._get_row(db, local_id))

    def items(self, status: QueueItemStatus | None = None) -> list[QueueItem]:
        """All items in FIFO order, optionally filtered by status."""
        with self._session() as db:
            query = (
                select(OfflineQueueRow)
                .where(OfflineQueueRow.device_id == self.device_id)
                .order_by(OfflineQueueRow.created_at, OfflineQueueRow.local_id)
            )
            if status is not None:
                query = query.where(OfflineQueueRow.status == status.value)
            return [_to_item(row) for row in db.execute(query).scalars().all()]

    def pending(self) -> list[QueueItem]:
        """Items a reconciliation pass should pick up, FIFO."""
        statuses = [s.value for s in RECONCILABLE_STATUSES]
        with self._session() as db:
            rows = db.execute(
                select(OfflineQueueRow)
                .where(OfflineQueueRow.device_id == self.device_id)
                .where(OfflineQueueRow.status.in_(statuses))
                .order_by(OfflineQueueRow.created_at, OfflineQueueRow.local_id)
            ).scalars().all()
            return [_to_item(row) for row in rows]

    def cached_snapshot(self, appointment_id: uuid.UUID) -> AppointmentRead | None:
        with self._session() as db:
            cached = db.get(CachedSnapshot, appointment_id)
            return AppointmentRead.model_validate(cached.data) if cached else None

    # ------------------------------------------------------------------
    # Sync claim
    # ------------------------------------------------------------------

    @contextmanager
    def claim(self) -> Iterator[None]:
        """
        Hold the device's sync claim for the duration of one pass.

        The claim lives in the queue file, so it excludes passes run by other
        processes on the same queue. A claim older than claim_ttl is taken over.

        Raises:
            ReconciliationInProgress if another pass holds the claim
        """
        holder = uuid.uuid4().hex
        now = self._clock.now()
        with self._session() as db:
            current = db.get(SyncClaim, self.device_id)
            if current is not None and now - current.claimed_at < self._claim_ttl:
                db.rollback()
                raise ReconciliationInProgress(
                    details={"device_id": self.device_id, "claimed_at": current.claimed_at.isoformat()}
                )
            if current is None:
                db.add(SyncClaim(device_id=self.device_id, holder=holder, claimed_at=now))
            else:
                logger.warning(
                    "Taking over stale sync claim for device %s (held since %s)",
                    self.device_id,
                    current.claimed_at.isoformat(),
                )
                current.holder = holder
                current.claimed_at = now
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ReconciliationInProgress(details={"device_id": self.device_id}) from exc
        try:
            yield
        finally:
            with self._session() as db:
                db.execute(
                    delete(SyncClaim)
                    .where(SyncClaim.device_id == self.device_id)
                    .where(SyncClaim.holder == holder)
                )
                db.commit()

    # ------------------------------------------------------------------
    # Reconciler hooks
    # ------------------------------------------------------------------

    def recover_interrupted(self) -> int:
        """
        Items left in `syncing` by a dead pass become `failed`.

        Only meaningful while holding the sync claim; otherwise a live pass
        could lose its in-flight item.
        """
        with self._session() as db:
            rows = db.execute(
                select(OfflineQueueRow)
                .where(OfflineQueueRow.device_id == self.device_id)
                .where(OfflineQueueRow.status == QueueItemStatus.SYNCING.value)
            ).scalars().all()
            for row in rows:
                row.status = QueueItemStatus.FAILED.value
                row.retry_count += 1
                row.last_error = INTERRUPTED_MESSAGE
            db.commit()
        if rows:
            logger.warning("Recovered %d item(s) interrupted mid-sync", len(rows))
        return len(rows)

    def mark_syncing(self, local_id: str) -> None:
        with self._session() as db:
            row = self._get_row(db, local_id)
            row.status = QueueItemStatus.SYNCING.value
            db.commit()

    def record_outcome(self, outcome: ItemOutcome, last_error: str | None) -> None:
        with self._session() as db:
            row = self._get_row(db, outcome.local_id)
            row.status = outcome.status.value
            row.retry_count = outcome.retry_count
            row.last_error = last_error
            if (
                row.type == QueueItemType.CREATE_HOLD.value
                and outcome.status == QueueItemStatus.CONFIRMED
                and outcome.appointment_id
            ):
                row.appointment_id = outcome.appointment_id
                # Dependents keep their target after the hold itself is discarded
                db.execute(
                    update(OfflineQueueRow)
                    .where(OfflineQueueRow.device_id == self.device_id)
                    .where(OfflineQueueRow.target_local_id == row.local_id)
                    .where(OfflineQueueRow.appointment_id.is_(None))
                    .values(appointment_id=outcome.appointment_id)
                )
            if outcome.appointment is not None:
                self._cache(db, outcome.appointment)
            db.commit()

    def resolve_local_id(self, local_id: str) -> uuid.UUID | None:
        """Server id of a confirmed create_hold."""
        with self._session() as db:
            row = db.get(OfflineQueueRow, local_id)
            if row is None or row.status != QueueItemStatus.CONFIRMED.value:
                return None
            return row.appointment_id

    def cache_snapshot(self, appointment: AppointmentRead) -> None:
        with self._session() as db:
            self._cache(db, appointment)
            db.commit()

    def _cache(self, db: Session, appointment: AppointmentRead) -> None:
        cached = db.get(CachedSnapshot, appointment.id)
        # Never let an older response overwrite a newer snapshot
        if cached is not None and cached.version > appointment.version:
            return
        db.merge(CachedSnapshot(
            appointment_id=appointment.id,
            version=appointment.version,
            data=appointment.model_dump(mode="json"),
            refreshed_at=self._clock.now(),
        ))

    # ------------------------------------------------------------------
    # Explicit user actions
    # ------------------------------------------------------------------

    def discard(self, local_id: str) -> QueueItem:
        """Remove an item in a terminal state, keeping server state as-is."""
        with self._session() as db:
            row = self._get_row(db, local_id)
            if row.status not in {s.value for s in CLEARABLE_STATUSES}:
                raise ValidationError(
                    f"Only {', '.join(s.value for s in CLEARABLE_STATUSES)} items can be discarded.",
                    details={"local_id": local_id, "status": row.status},
                )
            item = _to_item(row)
            db.delete(row)
            db.commit()
        logger.info("Discarded %s item %s (%s)", item.type.value, local_id, item.status.value)
        return item

    def reapply(self, local_id: str, expected_version: int) -> QueueItem:
        """
        Re-queue a conflicted intent against a refreshed version.

        The item gets a fresh idempotency key: expected_version is part of the
        payload fingerprint, so the old key is bound to the stale request.
        """
        if expected_version < 1:
            raise ValidationError("expected_version must be a positive integer.")
        with self._session() as db:
            row = self._get_row(db, local_id)
            if row.status != QueueItemStatus.CONFLICT.value:
                raise ValidationError(
                    "Only conflicted items can be reapplied.",
                    details={"local_id": local_id, "status": row.status},
                )
            row.expected_version = expected_version
            row.idempotency_key = str(uuid.uuid4())
            row.status = QueueItemStatus.QUEUED.value
            row.last_error = None
            db.commit()
            item = _to_item(row)
        logger.info("Reapplied item %s at version %d", local_id, expected_version)
        return item
