"""
Configuration management for the VM OS Upgrader.
"""

from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_TIMEOUT_MINUTES = 150
DEFAULT_SIGNAL_SCRIPT_SECONDS = 30
DEFAULT_SIGNAL_FILES_MINUTES = 30
DEFAULT_TARGET_OS_MINUTES = 20
DEFAULT_POWEROFF_MINUTES = 5

DEFAULT_TARGET_OS = ["windows server 2022", "windows server 2025"]


@dataclass(frozen=True)
class WorkflowDelays:
    """Settle delays and poll intervals used by the upgrade workflow (seconds)."""

    shutdown_grace: float = 60.0
    power_on_delay: float = 60.0
    tools_settle: float = 20.0
    power_task_timeout: float = 600.0
    script_poll_interval: float = 15.0
    signal_script_poll_interval: float = 5.0
    power_state_poll_interval: float = 15.0
    target_os_poll_interval: float = 45.0
    signal_file_poll_interval: float = 30.0
    max_consecutive_transient_errors: int = 5

    @classmethod
    def immediate(cls) -> "WorkflowDelays":
        """Zero delays, for tests and simulations."""
        return cls(
            shutdown_grace=0.0,
            power_on_delay=0.0,
            tools_settle=0.0,
            script_poll_interval=0.0,
            signal_script_poll_interval=0.0,
            power_state_poll_interval=0.0,
            target_os_poll_interval=0.0,
            signal_file_poll_interval=0.0,
        )

    def fixed_settle_seconds(self) -> float:
        return self.shutdown_grace + self.power_on_delay + self.tools_settle


@dataclass(frozen=True)
class TimeoutConfig:
    """
    Timeout budget for one machine's upgrade.

    Every value is independently overridable; zero or None falls back to the
    fixed default when resolved.
    """

    overall_minutes: Optional[float] = None
    signal_script_seconds: Optional[float] = None
    signal_files_minutes: Optional[float] = None
    target_os_minutes: Optional[float] = None
    poweroff_minutes: Optional[float] = None

    def resolved(self) -> "TimeoutConfig":
        """Return a copy with unset values replaced by defaults."""
        return TimeoutConfig(
            overall_minutes=self.overall_minutes or DEFAULT_TIMEOUT_MINUTES,
            signal_script_seconds=self.signal_script_seconds
            or DEFAULT_SIGNAL_SCRIPT_SECONDS,
            signal_files_minutes=self.signal_files_minutes
            or DEFAULT_SIGNAL_FILES_MINUTES,
            target_os_minutes=self.target_os_minutes or DEFAULT_TARGET_OS_MINUTES,
            poweroff_minutes=self.poweroff_minutes or DEFAULT_POWEROFF_MINUTES,
        )

    @property
    def overall_seconds(self) -> float:
        return float((self.overall_minutes or DEFAULT_TIMEOUT_MINUTES) * 60)

    @property
    def signal_script_timeout(self) -> float:
        return float(self.signal_script_seconds or DEFAULT_SIGNAL_SCRIPT_SECONDS)

    @property
    def signal_files_seconds(self) -> float:
        return float((self.signal_files_minutes or DEFAULT_SIGNAL_FILES_MINUTES) * 60)

    @property
    def target_os_seconds(self) -> float:
        return float((self.target_os_minutes or DEFAULT_TARGET_OS_MINUTES) * 60)

    @property
    def poweroff_seconds(self) -> float:
        return float((self.poweroff_minutes or DEFAULT_POWEROFF_MINUTES) * 60)

    def phase_budget_seconds(self, delays: Optional[WorkflowDelays] = None) -> float:
        """Sum of per-phase budgets plus fixed settle delays."""
        delays = delays or WorkflowDelays()
        return (
            self.signal_script_timeout
            + self.signal_files_seconds
            + self.target_os_seconds
            + self.poweroff_seconds
            + delays.fixed_settle_seconds()
        )

    def budget_warning(self, delays: Optional[WorkflowDelays] = None) -> Optional[str]:
        """
        Check the overall budget against the phase budgets.

        Returns:
            Warning text for the operator, or None when the overall timeout
            leaves room for the guest upgrade script itself.
        """
        phases = self.phase_budget_seconds(delays)
        if self.overall_seconds > phases:
            return None
        return (
            f"Overall timeout ({self.overall_seconds / 60:.0f} min) does not exceed "
            f"the sum of phase timeouts ({phases / 60:.0f} min); upgrades may be "
            f"cut off mid-phase"
        )


@dataclass
class UpgraderConfig:
    """Configuration for fleet OS upgrade operations."""

    vcenter_host: str
    vcenter_user: str
    vms: List[str] = field(default_factory=list)
    iso_path: str = ""
    insecure: bool = False
    api_release: str = "8.0.1.0"
    guest_username: str = "Administrator"
    create_snapshot: bool = True
    snapshot_prefix: str = "pre-upgrade"
    include_memory: bool = False
    parallel: int = 10
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    precheck_disk_gb: int = 10
    signal_script_seconds: int = DEFAULT_SIGNAL_SCRIPT_SECONDS
    signal_files_minutes: int = DEFAULT_SIGNAL_FILES_MINUTES
    target_os_minutes: int = DEFAULT_TARGET_OS_MINUTES
    poweroff_minutes: int = DEFAULT_POWEROFF_MINUTES
    target_os: List[str] = field(default_factory=lambda: list(DEFAULT_TARGET_OS))
    scripts_dir: str = "scripts"
    report_dir: str = "."
    dry_run: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "UpgraderConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            UpgraderConfig instance
        """
        return cls(
            vcenter_host=args.vcenter,
            vcenter_user=args.user,
            vms=list(args.vms or []),
            iso_path=args.iso or "",
            insecure=args.insecure,
            api_release=args.api_release,
            guest_username=args.guest_user,
            create_snapshot=not args.no_snapshot,
            snapshot_prefix=args.snapshot_prefix,
            include_memory=args.include_memory,
            parallel=args.parallel,
            timeout_minutes=args.timeout_minutes,
            precheck_disk_gb=args.precheck_disk_gb,
            signal_script_seconds=args.signal_script_seconds,
            signal_files_minutes=args.signal_files_minutes,
            target_os_minutes=args.target_os_minutes,
            poweroff_minutes=args.poweroff_minutes,
            target_os=list(args.target_os or DEFAULT_TARGET_OS),
            scripts_dir=args.scripts_dir,
            report_dir=args.report_dir,
            dry_run=args.dry_run,
            verbose=args.verbose,
        )

    def timeouts(self) -> TimeoutConfig:
        """Fully-resolved timeout configuration for upgrade jobs."""
        return TimeoutConfig(
            overall_minutes=self.timeout_minutes,
            signal_script_seconds=self.signal_script_seconds,
            signal_files_minutes=self.signal_files_minutes,
            target_os_minutes=self.target_os_minutes,
            poweroff_minutes=self.poweroff_minutes,
        ).resolved()
