"""
Snapshot cleanup for upgraded virtual machines.

Pre-upgrade snapshots are kept until an operator has verified the upgrade.
This module lists the snapshots whose names start with the configured prefix
and removes them, machine by machine, bounded by the same worker count as
the upgrade run.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List

from clients import HypervisorAPI
from dispatcher import clamp_workers
from models import MachineRef, SnapshotEntry

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Result of cleaning one machine's snapshots."""

    vm_name: str
    found: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class SnapshotCleaner:
    """Lists and removes pre-upgrade snapshots across machines."""

    def __init__(
        self,
        hypervisor: HypervisorAPI,
        prefix: str,
        dry_run: bool = False,
        max_parallel: int = 10,
    ):
        """
        Set up the snapshot cleaner.

        Args:
            hypervisor: Hypervisor control plane
            prefix: Only snapshots whose names start with this are touched
            dry_run: If True, only list what would be removed
            max_parallel: Maximum machines processed concurrently
        """
        if not prefix:
            raise ValueError("snapshot prefix must not be empty")
        self.hypervisor = hypervisor
        self.prefix = prefix
        self.dry_run = dry_run
        self.max_parallel = max_parallel

        self._lock = threading.Lock()
        self.stats = {
            "total": 0,
            "snapshots_found": 0,
            "removed": 0,
            "failed": 0,
        }
        self.results: List[CleanupResult] = []

    def find(self, machine: MachineRef) -> List[SnapshotEntry]:
        """Snapshots on a machine matching the prefix, oldest first."""
        return [
            s
            for s in self.hypervisor.list_snapshots(machine.ref, machine.name)
            if s.name.startswith(self.prefix)
        ]

    def clean(self, machine: MachineRef) -> CleanupResult:
        """Remove matching snapshots from one machine."""
        result = CleanupResult(vm_name=machine.name)
        try:
            matches = self.find(machine)
        except Exception as e:
            logger.error(f"[{machine.name}] Failed to list snapshots: {e}")
            result.errors.append(f"list snapshots: {e}")
            return result

        result.found = [s.name for s in matches]
        if not matches:
            logger.info(f"[{machine.name}] No snapshots with prefix '{self.prefix}'")
            return result

        for snap in matches:
            if self.dry_run:
                logger.info(f"DRY RUN: Would remove snapshot {snap.name} from {machine.name}")
                continue
            try:
                self.hypervisor.remove_snapshot(snap.ref)
                result.removed.append(snap.name)
                logger.info(f"[{machine.name}] ✓ Removed snapshot {snap.name}")
            except Exception as e:
                logger.error(f"[{machine.name}] Failed to remove snapshot {snap.name}: {e}")
                result.errors.append(f"{snap.name}: {e}")
        return result

    def run(self, machines: List[MachineRef]) -> Dict:
        """
        Clean snapshots on all machines.

        Args:
            machines: Machines to process

        Returns:
            Statistics dictionary
        """
        start = time.time()
        logger.info("=" * 70)
        logger.info("Snapshot Cleanup")
        logger.info("=" * 70)
        logger.info(f"Prefix: {self.prefix}")
        logger.info(f"VMs: {len(machines)}")
        logger.info(f"Dry run: {self.dry_run}")
        logger.info("=" * 70)

        if machines:
            workers = clamp_workers(self.max_parallel, len(machines))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="snapshot-worker"
            ) as pool:
                futures = [pool.submit(self.clean, m) for m in machines]
                for future in as_completed(futures):
                    self._record(future.result())

        logger.info("")
        logger.info("SNAPSHOT CLEANUP SUMMARY")
        logger.info("-" * 40)
        for k, v in self.stats.items():
            logger.info(f"{k:20s}: {v}")
        for r in sorted(self.results, key=lambda r: r.vm_name):
            if r.errors:
                logger.info(f"  {r.vm_name}: FAILED ({'; '.join(r.errors)})")
            elif self.dry_run:
                logger.info(f"  {r.vm_name}: would remove {len(r.found)} snapshot(s)")
            else:
                logger.info(f"  {r.vm_name}: removed {len(r.removed)} snapshot(s)")
        logger.info(f"Duration: {time.time() - start:.1f}s")
        logger.info("=" * 70)
        return self.stats

    def _record(self, result: CleanupResult) -> None:
        with self._lock:
            self.results.append(result)
            self.stats["total"] += 1
            self.stats["snapshots_found"] += len(result.found)
            self.stats["removed"] += len(result.removed)
            if not result.success:
                self.stats["failed"] += 1

