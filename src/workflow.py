"""
Per-machine OS upgrade workflow.

The upgrade is an ordered list of phases. Each phase is a plain function
taking the WorkflowContext and returning a PhaseResult (or None for success).
Whether a failing phase aborts the machine is decided in one place, the
``on_failure`` column of PHASES, not inside the phase functions.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from clients import GuestAPI, HypervisorAPI, TaskCancelled
from config import WorkflowDelays
from guest_scripts import (
    POWERSHELL,
    SIGNAL_FILE,
    SIGNAL_TASK_SCRIPT,
    WORKING_DIRECTORY,
    ScriptBundle,
    encoded_command_args,
    file_command_args,
)
from models import (
    GuestCredentials,
    PhaseError,
    StepRecord,
    StepStatus,
    UpgradeJob,
    WorkflowOutcome,
)
from polling import CancelToken, Observation, PollResult, PollStatus, poll_until
from validators import (
    TOOLS_RUNNING,
    check_upgrade_in_progress,
    get_disk_free_gb,
    get_system_drive,
    resolve_guest_username,
)

logger = logging.getLogger(__name__)

POWERED_OFF = "poweredOff"


class FailureClass(Enum):
    """What a failure in a phase means for the rest of the workflow."""

    FATAL = "fatal"
    SOFT = "soft"


class PhaseStatus(Enum):
    SUCCESS = "success"
    SOFT = "soft"
    FATAL = "fatal"


@dataclass
class PhaseResult:
    """Tagged result of running one phase."""

    status: PhaseStatus
    message: str = ""
    manual_check: bool = False
    cancelled: bool = False

    @classmethod
    def success(cls, message: str = "") -> "PhaseResult":
        return cls(PhaseStatus.SUCCESS, message)

    @classmethod
    def soft(cls, message: str, manual_check: bool = False) -> "PhaseResult":
        return cls(PhaseStatus.SOFT, message, manual_check=manual_check)

    @classmethod
    def fatal(cls, message: str, cancelled: bool = False) -> "PhaseResult":
        return cls(PhaseStatus.FATAL, message, cancelled=cancelled)


class WorkflowCancelled(Exception):
    """The overall deadline passed or the run was cancelled."""


@dataclass
class WorkflowContext:
    """Worker-local state shared by the phases of one machine's upgrade."""

    job: UpgradeJob
    hypervisor: HypervisorAPI
    guest: GuestAPI
    scripts: ScriptBundle
    cancel: CancelToken
    delays: WorkflowDelays
    creds: GuestCredentials = field(init=False)
    snapshot_name: Optional[str] = None
    pid: Optional[int] = None
    forced_power_off: bool = False

    def __post_init__(self):
        self.creds = GuestCredentials(
            username=resolve_guest_username(
                self.job.credentials.username, self.job.machine.domain
            ),
            password=self.job.credentials.password,
        )

    @property
    def vm(self) -> str:
        return self.job.machine.ref

    @property
    def name(self) -> str:
        return self.job.machine.name

    def poll(
        self,
        predicate: Callable[[], Observation],
        interval: float,
        timeout: Optional[float],
        description: str,
    ) -> PollResult:
        """Poll within this workflow's deadline; cancellation is raised."""
        result = poll_until(
            predicate,
            interval=interval,
            timeout=timeout,
            cancel=self.cancel,
            max_consecutive_transient_errors=self.delays.max_consecutive_transient_errors,
            description=f"{description} on {self.name}",
        )
        if result.status == PollStatus.CANCELLED:
            raise WorkflowCancelled(f"cancelled while waiting for {description}: {result.reason}")
        return result

    def settle(self, seconds: float, before: str) -> None:
        if self.cancel.wait(seconds):
            raise WorkflowCancelled(f"cancelled before {before}: {self.cancel.reason}")


# ----------------------------------------------------------------------
# Observations
# ----------------------------------------------------------------------


def process_exit(ctx: WorkflowContext, pid: int) -> Callable[[], Observation]:
    """Observe a guest process until it exits; the value is its exit code."""

    def observe() -> Observation:
        try:
            procs = ctx.guest.list_processes(ctx.vm, ctx.creds, [pid])
        except Exception as e:
            return Observation.transient(f"list processes failed: {e}")
        if not procs:
            # Gone from the process table: it completed
            return Observation.satisfied(0, f"PID {pid} no longer listed")
        proc = procs[0]
        if proc.finished:
            return Observation.satisfied(proc.exit_code or 0)
        return Observation.pending(f"PID {pid} still running")

    return observe


def power_state_is(ctx: WorkflowContext, wanted: str) -> Callable[[], Observation]:
    def observe() -> Observation:
        try:
            props = ctx.hypervisor.get_properties(ctx.vm, ["runtime.powerState"])
        except Exception as e:
            return Observation.transient(f"power state query failed: {e}")
        state = props.get("runtime.powerState")
        if state == wanted:
            return Observation.satisfied(state)
        return Observation.pending(f"power state {state}")

    return observe


def guest_os_matches(ctx: WorkflowContext, targets: List[str]) -> Callable[[], Observation]:
    """Observe the guest-reported OS name once the guest tools are running."""
    lowered = [t.lower() for t in targets]

    def observe() -> Observation:
        try:
            props = ctx.hypervisor.get_properties(
                ctx.vm, ["guest.guestFullName", "guest.toolsRunningStatus"]
            )
        except Exception as e:
            return Observation.transient(f"guest properties query failed: {e}")

        tools = props.get("guest.toolsRunningStatus") or ""
        if tools and tools != TOOLS_RUNNING:
            return Observation.pending(f"guest tools {tools}")

        full_name = props.get("guest.guestFullName") or ""
        name = full_name.lower()
        for target in lowered:
            if target in name:
                return Observation.satisfied(full_name)
        return Observation.pending(f"current OS {full_name or 'unknown'}")

    return observe


def signal_file_present(ctx: WorkflowContext) -> Callable[[], Observation]:
    def observe() -> Observation:
        try:
            if ctx.guest.file_exists(ctx.vm, ctx.creds, SIGNAL_FILE):
                return Observation.satisfied(SIGNAL_FILE)
        except Exception as e:
            # Guest operations are unavailable for most of the boot
            return Observation.pending(f"guest not reachable: {e}")
        return Observation.pending("signal file not present")

    return observe


# ----------------------------------------------------------------------
# Phases
# ----------------------------------------------------------------------


def check_preconditions(ctx: WorkflowContext) -> PhaseResult:
    in_progress, state = check_upgrade_in_progress(ctx.hypervisor, ctx.vm)
    if in_progress:
        return PhaseResult.fatal(
            f"upgrade appears to be in progress: VM is not powered on (state: {state})"
        )
    return PhaseResult.success(f"power state {state}")


def check_disk_space(ctx: WorkflowContext) -> PhaseResult:
    required = ctx.job.precheck_disk_gb
    drive = get_system_drive(ctx.hypervisor, ctx.vm)
    free = get_disk_free_gb(ctx.hypervisor, ctx.vm, drive)
    if free < required:
        return PhaseResult.fatal(f"disk: {free} GB free on {drive} < required {required} GB")
    return PhaseResult.success(f"{free} GB free on {drive}")


def create_snapshot(ctx: WorkflowContext) -> PhaseResult:
    policy = ctx.job.snapshot
    name = policy.name_for(ctx.name, datetime.now())
    logger.info(
        f"[{ctx.name}] Creating snapshot {name} (memory: {policy.include_memory})"
    )
    ctx.hypervisor.create_snapshot(
        ctx.vm,
        name,
        "Pre upgrade",
        memory=policy.include_memory,
        quiesce=False,
        cancel=ctx.cancel,
    )

    snapshots = ctx.hypervisor.list_snapshots(ctx.vm, ctx.name)
    if name not in {s.name for s in snapshots}:
        return PhaseResult.fatal(f"snapshot {name} was created but verification failed")
    ctx.snapshot_name = name
    return PhaseResult.success(name)


def mount_install_media(ctx: WorkflowContext) -> PhaseResult:
    ctx.hypervisor.mount_iso(ctx.vm, ctx.job.iso_path, cancel=ctx.cancel)
    return PhaseResult.success(ctx.job.iso_path)


def upload_guest_scripts(ctx: WorkflowContext) -> PhaseResult:
    for guest_path, content in ctx.scripts.uploads:
        logger.debug(f"[{ctx.name}] Uploading {guest_path} ({len(content)} bytes)")
        ctx.guest.upload_file(ctx.vm, ctx.creds, guest_path, content, overwrite=True)
    return PhaseResult.success(f"{len(ctx.scripts.uploads)} file(s)")


def setup_reboot_signal(ctx: WorkflowContext) -> PhaseResult:
    pid = ctx.guest.start_program(
        ctx.vm, ctx.creds, POWERSHELL, file_command_args(SIGNAL_TASK_SCRIPT)
    )
    logger.debug(f"[{ctx.name}] Signal task script started, PID {pid}")

    timeout = ctx.job.timeouts.signal_script_timeout
    result = ctx.poll(
        process_exit(ctx, pid),
        interval=ctx.delays.signal_script_poll_interval,
        timeout=timeout,
        description="signal task script",
    )
    if result.status == PollStatus.TIMED_OUT:
        logger.warning(
            f"[{ctx.name}] Signal task script still running after {timeout:.0f}s, continuing"
        )
        return PhaseResult.success(f"script still running after {timeout:.0f}s")
    if result.value != 0:
        return PhaseResult.fatal(f"signal task script exited with code {result.value}")
    return PhaseResult.success()


def start_guest_upgrade(ctx: WorkflowContext) -> PhaseResult:
    # Validate first so a bad password cannot lock the account out through
    # repeated process start attempts.
    try:
        ctx.guest.validate_credentials(ctx.vm, ctx.creds)
    except Exception as e:
        return PhaseResult.fatal(
            f"authentication failed for user '{ctx.creds.username}': {e}"
        )

    ctx.pid = ctx.guest.start_program(
        ctx.vm,
        ctx.creds,
        POWERSHELL,
        encoded_command_args(ctx.scripts.upgrade_script),
        WORKING_DIRECTORY,
    )
    return PhaseResult.success(f"PID {ctx.pid}")


def wait_guest_script(ctx: WorkflowContext) -> PhaseResult:
    result = ctx.poll(
        process_exit(ctx, ctx.pid),
        interval=ctx.delays.script_poll_interval,
        timeout=None,
        description=f"upgrade script (PID {ctx.pid})",
    )
    if result.value != 0:
        return PhaseResult.fatal(f"upgrade script failed with exit code {result.value}")
    return PhaseResult.success("exit code 0")


def power_cycle(ctx: WorkflowContext) -> PhaseResult:
    ctx.settle(ctx.delays.shutdown_grace, "shutdown check")

    timeout = ctx.job.timeouts.poweroff_seconds
    result = ctx.poll(
        power_state_is(ctx, POWERED_OFF),
        interval=ctx.delays.power_state_poll_interval,
        timeout=timeout,
        description="guest shutdown",
    )
    if result.status == PollStatus.TIMED_OUT:
        logger.warning(
            f"[{ctx.name}] Guest did not shut down within {timeout:.0f}s, forcing power off"
        )
        ctx.hypervisor.power_off(
            ctx.vm, timeout=ctx.delays.power_task_timeout, cancel=ctx.cancel
        )
        ctx.forced_power_off = True

    ctx.settle(ctx.delays.power_on_delay, "power on")
    ctx.hypervisor.power_on(
        ctx.vm, timeout=ctx.delays.power_task_timeout, cancel=ctx.cancel
    )
    ctx.settle(ctx.delays.tools_settle, "guest tools initialization")

    return PhaseResult.success(
        "forced power off, powered on" if ctx.forced_power_off else "guest shut down, powered on"
    )


def wait_target_os(ctx: WorkflowContext) -> PhaseResult:
    targets = list(ctx.job.target_os)
    timeout = ctx.job.timeouts.target_os_seconds
    result = ctx.poll(
        guest_os_matches(ctx, targets),
        interval=ctx.delays.target_os_poll_interval,
        timeout=timeout,
        description="target OS version",
    )
    if result.status == PollStatus.TIMED_OUT:
        return PhaseResult.fatal(
            f"timeout while waiting for OS version to match {targets} (waited {timeout:.0f}s)"
        )
    return PhaseResult.success(f"detected {result.value}")


def wait_reboot_signal(ctx: WorkflowContext) -> PhaseResult:
    timeout = ctx.job.timeouts.signal_files_seconds
    result = ctx.poll(
        signal_file_present(ctx),
        interval=ctx.delays.signal_file_poll_interval,
        timeout=timeout,
        description="post-reboot signal file",
    )
    if result.status == PollStatus.TIMED_OUT:
        return PhaseResult.soft(
            f"signal file {SIGNAL_FILE} not found within {timeout:.0f}s, "
            f"server should be checked manually",
            manual_check=True,
        )

    if ctx.scripts.cleanup_script:
        try:
            ctx.guest.start_program(
                ctx.vm, ctx.creds, POWERSHELL, encoded_command_args(ctx.scripts.cleanup_script)
            )
        except Exception as e:
            logger.warning(f"[{ctx.name}] Cleanup script failed: {e}")
    return PhaseResult.success("system ready")


def unmount_install_media(ctx: WorkflowContext) -> PhaseResult:
    ctx.hypervisor.unmount_iso(ctx.vm, cancel=ctx.cancel)
    return PhaseResult.success()


def _always(ctx: WorkflowContext) -> bool:
    return True


@dataclass(frozen=True)
class Phase:
    """One step of the upgrade and the policy applied when it fails."""

    name: str
    run: Callable[[WorkflowContext], Optional[PhaseResult]]
    on_failure: FailureClass
    enabled: Callable[[WorkflowContext], bool] = _always


PHASES: List[Phase] = [
    Phase("precondition_check", check_preconditions, FailureClass.FATAL),
    Phase(
        "disk_space_precheck",
        check_disk_space,
        FailureClass.FATAL,
        enabled=lambda ctx: ctx.job.precheck_disk_gb > 0,
    ),
    Phase(
        "create_snapshot",
        create_snapshot,
        FailureClass.FATAL,
        enabled=lambda ctx: ctx.job.snapshot.create,
    ),
    Phase("mount_install_media", mount_install_media, FailureClass.FATAL),
    Phase("upload_guest_scripts", upload_guest_scripts, FailureClass.FATAL),
    Phase("setup_reboot_signal", setup_reboot_signal, FailureClass.SOFT),
    Phase("start_guest_upgrade", start_guest_upgrade, FailureClass.FATAL),
    Phase("wait_guest_script", wait_guest_script, FailureClass.FATAL),
    Phase("power_cycle", power_cycle, FailureClass.FATAL),
    Phase("wait_target_os", wait_target_os, FailureClass.FATAL),
    Phase("wait_reboot_signal", wait_reboot_signal, FailureClass.SOFT),
    Phase("unmount_install_media", unmount_install_media, FailureClass.SOFT),
]


class UpgradeWorkflow:
    """Runs the phases for one machine, strictly in order."""

    def __init__(
        self,
        hypervisor: HypervisorAPI,
        guest: GuestAPI,
        scripts: ScriptBundle,
        delays: Optional[WorkflowDelays] = None,
        phases: Optional[List[Phase]] = None,
        cancel: Optional[CancelToken] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the workflow.

        Args:
            hypervisor: Hypervisor control plane
            guest: Guest execution plane
            scripts: Scripts uploaded to and run in the guest
            delays: Settle delays and poll intervals
            phases: Phase table (defaults to PHASES)
            cancel: Run-wide cancellation signal; each machine derives its own deadline
            clock: Wall clock for the step log
        """
        self.hypervisor = hypervisor
        self.guest = guest
        self.scripts = scripts
        self.delays = delays or WorkflowDelays()
        self.phases = phases if phases is not None else PHASES
        self.cancel = cancel
        self.clock = clock

    def run(self, job: UpgradeJob) -> WorkflowOutcome:
        """Upgrade one machine. Never raises; failures are in the outcome."""
        name = job.machine.name
        token = CancelToken(timeout=job.timeouts.overall_seconds, parent=self.cancel)
        ctx = WorkflowContext(
            job=job,
            hypervisor=self.hypervisor,
            guest=self.guest,
            scripts=self.scripts,
            cancel=token,
            delays=self.delays,
        )
        outcome = WorkflowOutcome(vm_name=name, start_time=self.clock())
        logger.info(f"[{name}] Starting upgrade (ISO: {job.iso_path})")

        for phase in self.phases:
            if not phase.enabled(ctx):
                logger.debug(f"[{name}] {phase.name} disabled, skipping")
                continue

            started = self.clock()
            if token.cancelled:
                result = PhaseResult.fatal(f"cancelled: {token.reason}", cancelled=True)
            else:
                logger.info(f"[{name}] {phase.name}...")
                result = self._run_phase(phase, ctx)
            outcome.steps.append(
                StepRecord(
                    phase=phase.name,
                    status=_step_status(result),
                    start_time=started,
                    end_time=self.clock(),
                    message=result.message,
                )
            )

            if result.status == PhaseStatus.FATAL:
                outcome.error = PhaseError(phase.name, result.message, result.cancelled)
                logger.error(f"[{name}] FAILED in {phase.name}: {result.message}")
                break
            if result.status == PhaseStatus.SOFT:
                logger.warning(f"[{name}] SOFT FAILURE in {phase.name}: {result.message}")
                if result.manual_check:
                    outcome.manual_check_required = True
                    logger.warning(f"[{name}] MANUAL CHECK REQUIRED: {result.message}")
            else:
                logger.info(f"[{name}] ✓ {phase.name} {result.message}".rstrip())
        else:
            outcome.success = True

        outcome.end_time = self.clock()
        if outcome.success:
            logger.info(f"[{name}] ✓ Upgrade completed")
        return outcome

    def _run_phase(self, phase: Phase, ctx: WorkflowContext) -> PhaseResult:
        """Run one phase and classify its failure through the phase policy."""
        try:
            result = phase.run(ctx) or PhaseResult.success()
        except (WorkflowCancelled, TaskCancelled) as e:
            return PhaseResult.fatal(str(e), cancelled=True)
        except Exception as e:
            result = PhaseResult.fatal(str(e) or type(e).__name__)

        if result.status == PhaseStatus.FATAL and not result.cancelled:
            if phase.on_failure == FailureClass.SOFT:
                return PhaseResult.soft(result.message, result.manual_check)
        return result


def _step_status(result: PhaseResult) -> StepStatus:
    if result.status == PhaseStatus.SUCCESS:
        return StepStatus.COMPLETED
    if result.status == PhaseStatus.SOFT:
        return StepStatus.WARNING
    return StepStatus.CANCELLED if result.cancelled else StepStatus.FAILED
