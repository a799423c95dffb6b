"""System router - current system mode (always readable, even when unsafe)."""

from fastapi import APIRouter, Depends

from booking.core.deps import get_mode_gate
from booking.core.mode_gate import SystemModeGate
from booking.schemas.appointment import SystemModeRead
from booking.schemas.envelope import Envelope

router = APIRouter(prefix="/v1", tags=["system"])


@router.get("/health", response_model=Envelope[SystemModeRead])
def get_system_mode(gate: SystemModeGate = Depends(get_mode_gate)):
    """
    Last published mode and per-check statuses.

    Never runs probes inline; reflects the last completed probe round.
    """
    return Envelope(data=SystemModeRead.model_validate(gate.snapshot().to_dict()))
