"""
CycleGuard: keeps the reconciliation cycle non-reentrant.

A tick that arrives while the previous one is still running is dropped, not
queued. A cycle still running past its deadline is treated as hung and
force-completed so the next tick can run.

Usage:
    started, reason = guard.start_cycle()
    if not started:
        logger.info("RECONCILE_TICK_SKIPPED", reason=reason)
        return

    try:
        for position in positions:
            ...
            guard.record_position_processed()
    finally:
        guard.end_cycle()
"""
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Optional, Tuple

from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)

HISTORY_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleState:
    """Counters and timing for one reconciliation tick."""
    cycle_id: str
    started_at: datetime
    deadline: datetime
    finished_at: Optional[datetime] = None
    positions_processed: int = 0
    orders_placed: int = 0
    errors: int = 0
    error: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.finished_at is not None

    def duration_seconds(self) -> float:
        return ((self.finished_at or _now()) - self.started_at).total_seconds()


class CycleGuard:
    """Drops overlapping ticks and recovers from hung ones."""

    def __init__(
        self,
        min_cycle_interval_seconds: float = 0,
        max_cycle_duration_seconds: float = 300,
    ):
        self.min_interval = timedelta(seconds=min_cycle_interval_seconds)
        self.max_duration = timedelta(seconds=max_cycle_duration_seconds)

        self.current_cycle: Optional[CycleState] = None
        self.last_completed_cycle: Optional[CycleState] = None
        self.cycle_history: Deque[CycleState] = deque(maxlen=HISTORY_SIZE)

        self._stats = {"total_cycles": 0, "skipped_cycles": 0, "force_completed": 0}

    @property
    def is_running(self) -> bool:
        return self.current_cycle is not None and not self.current_cycle.is_complete

    def start_cycle(self) -> Tuple[bool, Optional[str]]:
        """Begin a tick. Returns ``(started, reason)``; ``reason`` explains a dropped tick."""
        now = _now()

        if self.is_running:
            running = self.current_cycle
            elapsed = (now - running.started_at).total_seconds()
            if now - running.started_at < self.max_duration:
                self._stats["skipped_cycles"] += 1
                return False, f"OVERLAPPING_CYCLE: {running.cycle_id} running for {elapsed:.1f}s"
            self._force_complete(running, now, elapsed)

        previous = self.last_completed_cycle
        if previous is not None and self.min_interval:
            since_last = now - previous.started_at
            if since_last < self.min_interval:
                self._stats["skipped_cycles"] += 1
                return False, f"TOO_SOON: {since_last.total_seconds():.1f}s since {previous.cycle_id}"

        self.current_cycle = CycleState(
            cycle_id=f"cycle_{now:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}",
            started_at=now,
            deadline=now + self.max_duration,
        )
        self._stats["total_cycles"] += 1
        return True, None

    def _force_complete(self, cycle: CycleState, now: datetime, elapsed: float) -> None:
        logger.warning(
            "CYCLE_FORCE_COMPLETE",
            cycle_id=cycle.cycle_id,
            elapsed_seconds=round(elapsed, 1),
            max_duration_seconds=self.max_duration.total_seconds(),
        )
        cycle.finished_at = now
        cycle.error = "TIMEOUT_FORCE_COMPLETED"
        self.cycle_history.append(cycle)
        self.last_completed_cycle = cycle
        self._stats["force_completed"] += 1

    def end_cycle(self) -> CycleState:
        """Close the running tick and return its final state."""
        cycle = self.current_cycle
        if cycle is None:
            raise RuntimeError("end_cycle() called with no running cycle")

        if not cycle.is_complete:
            cycle.finished_at = _now()
            self.cycle_history.append(cycle)
        self.last_completed_cycle = cycle
        self.current_cycle = None
        return cycle

    def record_position_processed(self) -> None:
        if self.current_cycle:
            self.current_cycle.positions_processed += 1

    def record_orders_placed(self, count: int = 1) -> None:
        if self.current_cycle:
            self.current_cycle.orders_placed += count

    def record_error(self) -> None:
        if self.current_cycle:
            self.current_cycle.errors += 1

    def get_cycle_stats(self) -> Dict:
        last = self.last_completed_cycle
        return {
            **self._stats,
            "current_cycle_id": self.current_cycle.cycle_id if self.current_cycle else None,
            "current_cycle_running": self.is_running,
            "last_completed_at": last.finished_at.isoformat() if last and last.finished_at else None,
            "last_duration_seconds": round(last.duration_seconds(), 2) if last else None,
        }
