"""
Fleet OS upgrade runner for vSphere virtual machines.
"""

import contextlib
import json
import logging
import os
import time
from datetime import datetime
from typing import Callable, ContextManager, Dict, Iterable, List, Optional, Tuple

from aggregator import AggregateState, FleetStatus, ResultAggregator
from config import UpgraderConfig, WorkflowDelays
from dispatcher import run_all
from guest_scripts import ScriptBundle
from models import GuestCredentials, SnapshotPolicy, UpgradeJob, VMInfo, WorkflowOutcome
from polling import CancelToken
from validators import ValidationError, validate_iso_path
from workflow import UpgradeWorkflow

logger = logging.getLogger(__name__)


def resolve_vms(inventory, names: Iterable[str]) -> Tuple[List[VMInfo], List[str]]:
    """
    Resolve VM names against the inventory.

    Names match exactly first, then case-insensitively. Duplicate names
    collapse to one entry, keeping the first occurrence.

    Returns:
        Tuple of (resolved VMs in request order, unknown names)
    """
    vms = inventory.list_vms()
    exact = {vm.name: vm for vm in vms}
    folded = {vm.name.lower(): vm for vm in vms}

    resolved: List[VMInfo] = []
    unknown: List[str] = []
    seen = set()
    for name in names:
        name = name.strip()
        if not name:
            continue
        vm = exact.get(name) or folded.get(name.lower())
        if vm is None:
            if name not in unknown:
                unknown.append(name)
            continue
        if vm.ref in seen:
            logger.debug(f"Ignoring duplicate VM name: {name}")
            continue
        seen.add(vm.ref)
        resolved.append(vm)
    return resolved, unknown


class FleetUpgrader:
    """Manages fleet-wide OS upgrades for vSphere virtual machines."""

    def __init__(
        self,
        config: UpgraderConfig,
        inventory,
        guest_password: str,
        scripts: ScriptBundle,
        connect: Optional[Callable[[], ContextManager]] = None,
        delays: Optional[WorkflowDelays] = None,
    ):
        """
        Initialize the fleet upgrader.

        Args:
            config: Run configuration
            inventory: Client used for inventory and pre-flight checks
            guest_password: Guest OS password, held in memory only
            scripts: Scripts uploaded to and run in each guest
            connect: Opens a hypervisor/guest handle for one machine's upgrade;
                defaults to sharing ``inventory``
            delays: Settle delays and poll intervals
        """
        self.config = config
        self.inventory = inventory
        self.guest_password = guest_password
        self.scripts = scripts
        self.connect = connect or (lambda: contextlib.nullcontext(inventory))
        self.delays = delays or WorkflowDelays()
        self.cancel_token = CancelToken()
        self.interrupted = False

        self.stats = {
            "total": 0,
            "succeeded": 0,
            "failed": 0,
            "manual_check": 0,
        }

        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self.results: List[WorkflowOutcome] = []
        self.summary = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Cancel every in-flight and pending machine upgrade."""
        logger.warning(f"Cancelling fleet upgrade: {reason}")
        self.cancel_token.cancel(reason)

    def _on_interrupt(self) -> None:
        self.interrupted = True
        self.cancel("interrupted by operator")

    def build_jobs(self, vms: List[VMInfo]) -> List[UpgradeJob]:
        """One immutable job per machine."""
        creds = GuestCredentials(
            username=self.config.guest_username, password=self.guest_password
        )
        snapshot = SnapshotPolicy(
            create=self.config.create_snapshot,
            name_prefix=self.config.snapshot_prefix,
            include_memory=self.config.include_memory,
        )
        timeouts = self.config.timeouts()
        return [
            UpgradeJob(
                machine=vm.to_machine(),
                credentials=creds,
                iso_path=self.config.iso_path,
                snapshot=snapshot,
                timeouts=timeouts,
                precheck_disk_gb=self.config.precheck_disk_gb,
                target_os=tuple(self.config.target_os),
            )
            for vm in vms
        ]

    def _run_job(self, job: UpgradeJob) -> WorkflowOutcome:
        with self.connect() as handle:
            workflow = UpgradeWorkflow(
                hypervisor=handle,
                guest=handle,
                scripts=self.scripts,
                delays=self.delays,
                cancel=self.cancel_token,
            )
            return workflow.run(job)

    def _log_banner(self) -> None:
        c = self.config
        timeouts = c.timeouts()
        logger.info("=" * 70)
        logger.info("vSphere VM Fleet OS Upgrade")
        logger.info("=" * 70)
        logger.info(f"vCenter: {c.vcenter_host}")
        logger.info(f"VMs requested: {len(c.vms)}")
        logger.info(f"ISO: {c.iso_path}")
        logger.info(f"Guest user: {c.guest_username}")
        logger.info(
            f"Snapshot: {'yes' if c.create_snapshot else 'no'} "
            f"(prefix: {c.snapshot_prefix}, memory: {c.include_memory})"
        )
        logger.info(f"Disk precheck: {c.precheck_disk_gb} GB")
        logger.info(f"Max parallel: {c.parallel}")
        logger.info(f"Timeout per VM: {timeouts.overall_minutes:.0f} min")
        logger.info(
            f"Phase timeouts: signal script {timeouts.signal_script_timeout:.0f}s, "
            f"signal file {timeouts.signal_files_minutes:.0f} min, "
            f"target OS {timeouts.target_os_minutes:.0f} min, "
            f"power off {timeouts.poweroff_minutes:.0f} min"
        )
        logger.info(f"Target OS: {', '.join(c.target_os)}")
        logger.info(f"Dry run: {c.dry_run}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

    def _on_progress(self, state: AggregateState, line: str) -> None:
        logger.info(
            f"Progress: {state.completed}/{state.total} ({state.fraction:.0%}) "
            f"{line}"
        )

    def run(self) -> Dict:
        """
        Execute the fleet upgrade.

        Returns:
            Statistics dictionary

        Raises:
            ValidationError: If the ISO path or any VM name is invalid
        """
        self.run_start_time = time.time()
        self._log_banner()

        warning = self.config.timeouts().budget_warning(self.delays)
        if warning:
            logger.warning(warning)

        validate_iso_path(self.config.iso_path, self.inventory.list_datastores())
        vms, unknown = resolve_vms(self.inventory, self.config.vms)
        if unknown:
            raise ValidationError(f"Unknown VM name(s): {', '.join(unknown)}")
        if not vms:
            raise ValidationError("No VMs selected")

        self.stats["total"] = len(vms)
        if self.config.dry_run:
            for vm in vms:
                logger.info(
                    f"DRY RUN: Would upgrade {vm.name} (OS: {vm.os}, power: {vm.power_state})"
                )
            self.stats["dry_run"] = len(vms)
            self.run_end_time = time.time()
            return self.stats

        jobs = self.build_jobs(vms)
        aggregator = ResultAggregator(total=len(jobs), on_progress=self._on_progress)
        self.results = run_all(
            jobs,
            self._run_job,
            self.config.parallel,
            on_outcome=aggregator.record,
            on_interrupt=self._on_interrupt,
        )
        self.summary = aggregator.summary()
        state = self.summary.state
        self.stats["succeeded"] = state.succeeded
        self.stats["failed"] = state.failed
        self.stats["manual_check"] = state.manual_check
        if self.interrupted:
            self.stats["interrupted"] = True

        self.run_end_time = time.time()
        self._print_report()
        return self.stats

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            return f"{mins}m {seconds % 60:.0f}s"
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m {seconds % 60:.0f}s"

    def _print_report(self):
        """Print timing, statistics and per-machine results."""
        total_duration = self.run_end_time - self.run_start_time

        logger.info("")
        logger.info("=" * 70)
        logger.info("UPGRADE REPORT")
        logger.info("=" * 70)

        logger.info("")
        logger.info("TIMING SUMMARY")
        logger.info("-" * 40)
        logger.info(
            f"Start time:      {datetime.fromtimestamp(self.run_start_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(
            f"End time:        {datetime.fromtimestamp(self.run_end_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(f"Total duration:  {self._format_duration(total_duration)}")

        logger.info("")
        logger.info("STATISTICS")
        logger.info("-" * 40)
        for k, v in self.stats.items():
            logger.info(f"{k:20s}: {v}")

        succeeded = [r for r in self.results if r.success]
        failed = [r for r in self.results if not r.success]
        manual = [r for r in succeeded if r.manual_check_required]

        if succeeded:
            logger.info("")
            logger.info("SUCCESSFUL UPGRADES")
            logger.info("-" * 40)
            logger.info(f"{'VM':<30} {'Duration':<12} {'Warnings'}")
            logger.info("-" * 70)
            for r in sorted(succeeded, key=lambda r: r.vm_name):
                duration = r.duration_seconds
                duration_str = self._format_duration(duration) if duration else "N/A"
                logger.info(f"{r.vm_name:<30} {duration_str:<12} {len(r.warnings)}")

            times = [r.duration_seconds for r in succeeded if r.duration_seconds]
            if len(times) > 1:
                logger.info("-" * 70)
                logger.info(
                    f"Average upgrade time: {self._format_duration(sum(times) / len(times))}"
                )
                logger.info(f"Fastest upgrade:      {self._format_duration(min(times))}")
                logger.info(f"Slowest upgrade:      {self._format_duration(max(times))}")

        if failed:
            logger.info("")
            logger.info("FAILED UPGRADES")
            logger.info("-" * 40)
            logger.info(f"{'VM':<30} {'Phase':<24} {'Error'}")
            logger.info("-" * 70)
            for r in sorted(failed, key=lambda r: r.vm_name):
                phase = r.error.phase if r.error else "unknown"
                message = r.error.message if r.error else "Unknown"
                error = (message[:60] + "...") if len(message) > 60 else message
                logger.info(f"{r.vm_name:<30} {phase:<24} {error}")

        if manual:
            logger.info("")
            logger.info("MANUAL CHECK REQUIRED")
            logger.info("-" * 40)
            for r in manual:
                logger.info(f"  {r.vm_name}")

        logger.debug("")
        logger.debug("PHASE DURATIONS")
        for r in sorted(self.results, key=lambda r: r.vm_name):
            for s in r.steps:
                logger.debug(
                    f"  {r.vm_name:<24} {s.phase:<24} {s.status.value:<10} "
                    f"{self._format_duration(s.duration_seconds)}"
                )

        logger.info("")
        if self.summary is not None:
            status = (
                "ALL SUCCEEDED"
                if self.summary.status == FleetStatus.ALL_SUCCEEDED
                else "COMPLETED WITH FAILURES"
            )
            logger.info(f"Result: {status} - {self.summary.text}")
        logger.info("=" * 70)

        self._export_results_json()

    def _export_results_json(self) -> str:
        """Export results to a JSON file for further processing."""
        report = {
            "vcenter": self.config.vcenter_host,
            "iso_path": self.config.iso_path,
            "dry_run": self.config.dry_run,
            "start_time": datetime.fromtimestamp(self.run_start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.run_end_time).isoformat(),
            "total_duration_seconds": self.run_end_time - self.run_start_time,
            "statistics": self.stats,
            "summary": self.summary.text if self.summary else None,
            "results": [r.to_dict() for r in self.results],
        }

        filename = os.path.join(
            self.config.report_dir,
            f"upgrade-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json",
        )
        with open(filename, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
        return filename
