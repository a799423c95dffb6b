"""System mode gate.

A process-wide, single-writer cell holding the latest health probe results.
Mutation paths consult it through `ensure_writable()`; readers always see the
last fully published snapshot, never a half-updated one.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping

from booking.core.clock import Clock, system_clock
from booking.core.errors import SystemUnsafe
from booking.db.enums import CheckStatus, HealthCheckName, SystemMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    status: CheckStatus
    detail: str | None = None
    checked_at: datetime | None = None


@dataclass(frozen=True)
class ModeSnapshot:
    mode: SystemMode
    checks: Mapping[str, CheckResult] = field(default_factory=dict)
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.mode.value,
            "checks": {name: result.status.value for name, result in self.checks.items()},
            "details": {
                name: result.detail for name, result in self.checks.items() if result.detail
            },
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def classify(statuses: Mapping[str, CheckStatus]) -> SystemMode:
    """
    Aggregate named check statuses into a system mode.

    Any failed check -> unsafe; otherwise any degraded -> degraded; else online.
    """
    values = set(statuses.values())
    if CheckStatus.FAILED in values:
        return SystemMode.UNSAFE
    if CheckStatus.DEGRADED in values:
        return SystemMode.DEGRADED
    return SystemMode.ONLINE


class SystemModeGate:
    """Owned health state. Probes write, mutations read."""

    def __init__(
        self,
        check_names: tuple[str, ...] = tuple(c.value for c in HealthCheckName),
        clock: Clock = system_clock,
    ):
        self._clock = clock
        self._write_lock = threading.Lock()
        now = clock.now()
        checks = {name: CheckResult(CheckStatus.ONLINE, None, now) for name in check_names}
        self._snapshot = ModeSnapshot(SystemMode.ONLINE, MappingProxyType(checks), now)

    def snapshot(self) -> ModeSnapshot:
        # Reference reads are atomic; the snapshot itself is immutable
        return self._snapshot

    @property
    def mode(self) -> SystemMode:
        return self._snapshot.mode

    def publish(self, results: Mapping[str, CheckResult]) -> ModeSnapshot:
        """Replace the given checks in one step and recompute the mode."""
        with self._write_lock:
            checks = dict(self._snapshot.checks)
            checks.update(results)
            mode = classify({name: result.status for name, result in checks.items()})
            previous = self._snapshot.mode
            self._snapshot = ModeSnapshot(mode, MappingProxyType(checks), self._clock.now())

        if mode != previous:
            logger.warning("System mode changed: %s -> %s", previous.value, mode.value)
        return self._snapshot

    def report(
        self,
        check: str | HealthCheckName,
        status: CheckStatus,
        detail: str | None = None,
    ) -> ModeSnapshot:
        """Record a single check result."""
        name = check.value if isinstance(check, HealthCheckName) else check
        return self.publish({name: CheckResult(status, detail, self._clock.now())})

    def ensure_writable(self) -> ModeSnapshot:
        """
        Gate a mutation.

        Raises:
            SystemUnsafe if any check has failed
        """
        current = self._snapshot
        if current.mode == SystemMode.UNSAFE:
            failed = sorted(
                name for name, result in current.checks.items()
                if result.status == CheckStatus.FAILED
            )
            raise SystemUnsafe(details={"failed_checks": failed})
        return current
