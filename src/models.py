"""
Data models for the VM OS Upgrader.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from config import TimeoutConfig


@dataclass(frozen=True)
class MachineRef:
    """Reference to a virtual machine."""

    ref: str  # managed object id, e.g. vm-42
    name: str  # display name
    domain: str = ""  # guest FQDN as reported by the guest tooling


@dataclass(frozen=True)
class VMInfo:
    """Inventory entry for a virtual machine."""

    name: str
    ref: str
    os: str = "Unknown"
    domain: str = ""
    power_state: str = ""

    def to_machine(self) -> MachineRef:
        return MachineRef(ref=self.ref, name=self.name, domain=self.domain)


@dataclass(frozen=True)
class GuestCredentials:
    """Guest OS credentials. The password lives in memory only."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class SnapshotPolicy:
    """Pre-upgrade snapshot settings."""

    create: bool = True
    name_prefix: str = "pre-upgrade"
    include_memory: bool = False

    def name_for(self, vm_name: str, when: Optional[datetime] = None) -> str:
        when = when or datetime.now()
        return f"{self.name_prefix}-pre-{vm_name}-{when.strftime('%Y%m%d-%H%M%S')}"


@dataclass(frozen=True)
class UpgradeJob:
    """One machine's upgrade request. Immutable once submitted."""

    machine: MachineRef
    credentials: GuestCredentials
    iso_path: str
    snapshot: SnapshotPolicy = field(default_factory=SnapshotPolicy)
    timeouts: TimeoutConfig = field(default_factory=lambda: TimeoutConfig().resolved())
    precheck_disk_gb: int = 0
    target_os: Tuple[str, ...] = ("windows server 2022", "windows server 2025")


@dataclass(frozen=True)
class SnapshotEntry:
    """A snapshot found on a virtual machine."""

    vm_name: str
    name: str
    ref: str
    created: str = ""


@dataclass(frozen=True)
class GuestProcessInfo:
    """Status of a process running inside the guest."""

    pid: int
    exit_code: Optional[int] = None
    end_time: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.end_time is not None


class StepStatus(Enum):
    """Terminal status of one workflow phase."""

    COMPLETED = "completed"
    WARNING = "warning"  # soft failure, workflow continued
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepRecord:
    """One entry of a workflow's step log."""

    phase: str
    status: StepStatus
    start_time: float
    end_time: float
    message: str = ""

    @property
    def duration_seconds(self) -> float:
        return self.end_time - self.start_time


@dataclass
class PhaseError:
    """Error that terminated a workflow, tagged with the failing phase."""

    phase: str
    message: str
    cancelled: bool = False

    def __str__(self) -> str:
        return f"{self.phase}: {self.message}"


@dataclass
class WorkflowOutcome:
    """Terminal record of one machine's upgrade workflow."""

    vm_name: str
    success: bool = False
    error: Optional[PhaseError] = None
    steps: List[StepRecord] = field(default_factory=list)
    manual_check_required: bool = False
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def warnings(self) -> List[StepRecord]:
        return [s for s in self.steps if s.status == StepStatus.WARNING]

    def phases(self) -> List[str]:
        return [s.phase for s in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "vm_name": self.vm_name,
            "success": self.success,
            "manual_check_required": self.manual_check_required,
            "error": (
                {
                    "phase": self.error.phase,
                    "message": self.error.message,
                    "cancelled": self.error.cancelled,
                }
                if self.error
                else None
            ),
            "start_time": (
                datetime.fromtimestamp(self.start_time).isoformat()
                if self.start_time
                else None
            ),
            "end_time": (
                datetime.fromtimestamp(self.end_time).isoformat()
                if self.end_time
                else None
            ),
            "duration_seconds": self.duration_seconds,
            "steps": [
                {
                    "phase": s.phase,
                    "status": s.status.value,
                    "duration_seconds": s.duration_seconds,
                    "message": s.message,
                }
                for s in self.steps
            ],
        }
