"""
Thread-safe aggregation of per-machine outcomes into fleet progress.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from models import WorkflowOutcome


class FleetStatus(Enum):
    ALL_SUCCEEDED = "all_succeeded"
    COMPLETED_WITH_FAILURES = "completed_with_failures"


@dataclass(frozen=True)
class AggregateState:
    """Point-in-time copy of the fleet counters."""

    total: int
    completed: int = 0
    succeeded: int = 0
    failed: int = 0
    manual_check: int = 0

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass
class FleetSummary:
    """Final result of a fleet run."""

    state: AggregateState
    status: FleetStatus
    manual_check_vms: List[str] = field(default_factory=list)
    failed_vms: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return (
            f"{self.state.succeeded}/{self.state.total} succeeded, "
            f"{self.state.failed} failed"
        )


class ResultAggregator:
    """
    Accumulates outcomes and an append-only progress log.

    Counters and log are guarded by one lock; it is never held across a
    remote call or a progress callback.
    """

    def __init__(
        self,
        total: int,
        on_progress: Optional[Callable[[AggregateState, str], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.total = total
        self.on_progress = on_progress
        self.clock = clock
        self._lock = threading.Lock()
        self._completed = 0
        self._succeeded = 0
        self._failed = 0
        self._manual: List[str] = []
        self._failed_vms: List[str] = []
        self._log: List[str] = []
        self._outcomes: List[WorkflowOutcome] = []

    def record(self, outcome: WorkflowOutcome) -> AggregateState:
        """Count one outcome, append its log line and notify progress."""
        line = self._format_line(outcome)
        with self._lock:
            self._completed += 1
            if outcome.success:
                self._succeeded += 1
                if outcome.manual_check_required:
                    self._manual.append(outcome.vm_name)
            else:
                self._failed += 1
                self._failed_vms.append(outcome.vm_name)
            self._log.append(line)
            self._outcomes.append(outcome)
            state = self._state_locked()

        if self.on_progress is not None:
            self.on_progress(state, line)
        return state

    def _format_line(self, outcome: WorkflowOutcome) -> str:
        ts = self.clock().strftime("%H:%M:%S")
        if not outcome.success:
            return f"[{ts}] FAILED ({outcome.vm_name}): {outcome.error}"
        if outcome.manual_check_required:
            return (
                f"[{ts}] DONE - MANUAL CHECK REQUIRED ({outcome.vm_name}): "
                f"post-reboot signal not seen"
            )
        return f"[{ts}] DONE ({outcome.vm_name}): upgrade completed"

    def _state_locked(self) -> AggregateState:
        return AggregateState(
            total=self.total,
            completed=self._completed,
            succeeded=self._succeeded,
            failed=self._failed,
            manual_check=len(self._manual),
        )

    def state(self) -> AggregateState:
        with self._lock:
            return self._state_locked()

    def log_lines(self) -> List[str]:
        with self._lock:
            return list(self._log)

    def outcomes(self) -> List[WorkflowOutcome]:
        with self._lock:
            return list(self._outcomes)

    def summary(self) -> FleetSummary:
        """Final summary; call once the outcome stream has closed."""
        with self._lock:
            state = self._state_locked()
            manual = list(self._manual)
            failed = list(self._failed_vms)
        status = (
            FleetStatus.ALL_SUCCEEDED
            if state.failed == 0 and state.completed == state.total
            else FleetStatus.COMPLETED_WITH_FAILURES
        )
        return FleetSummary(
            state=state, status=status, manual_check_vms=manual, failed_vms=failed
        )
