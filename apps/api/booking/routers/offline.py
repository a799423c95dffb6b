"""Offline queue router - server-side reconciliation of a device's queue."""

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from booking.core.clock import Clock
from booking.core.config import settings
from booking.core.deps import get_clock, get_db, get_mutation_context, get_single_flight
from booking.schemas.envelope import Envelope, ErrorEnvelope
from booking.schemas.offline import ReconcileReport, ReconcileRequest
from booking.services import reconcile_service
from booking.services.appointment_service import MutationContext
from booking.services.reconcile_service import LocalMutationExecutor, SingleFlight

router = APIRouter(prefix="/v1/offline-queue", tags=["offline"])


@router.post(
    "/reconcile",
    response_model=Envelope[ReconcileReport],
    responses={400: {"model": ErrorEnvelope}, 409: {"model": ErrorEnvelope}},
)
def reconcile(
    data: ReconcileRequest,
    ctx: MutationContext = Depends(get_mutation_context),
    flight: SingleFlight = Depends(get_single_flight),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """
    Replay the submitted items in FIFO order.

    Each item keeps its own idempotency key, so resubmitting a queue after a
    dropped response replays confirmed items instead of applying them twice.
    """
    executor = LocalMutationExecutor.for_device(db, ctx, data.device_id)
    report = reconcile_service.reconcile_offline_queue(
        data.device_id,
        data.items,
        executor,
        flight=flight,
        clock=clock,
        hold_ttl=timedelta(minutes=settings.OFFLINE_HOLD_TTL_MINUTES),
    )
    return Envelope(data=report)
