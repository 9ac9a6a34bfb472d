"""
Bounded worker pool that runs one upgrade workflow per job.
"""

import logging
import queue
import threading
import time
from typing import Callable, Iterator, List, Optional

from models import PhaseError, UpgradeJob, WorkflowOutcome

logger = logging.getLogger(__name__)

_DONE = object()


def clamp_workers(configured: int, job_count: int) -> int:
    """Worker count bounded by the number of jobs, never below one."""
    return max(1, min(configured, job_count))


class FleetDispatcher:
    """
    Fans upgrade jobs out to a fixed number of worker threads.

    Each worker pulls jobs until the queue is drained and emits exactly one
    WorkflowOutcome per job, so the consumer always sees one result per
    submitted job, in completion order.
    """

    def __init__(
        self,
        run_workflow: Callable[[UpgradeJob], WorkflowOutcome],
        max_workers: int,
        on_interrupt: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            run_workflow: Runs one machine's upgrade to completion
            max_workers: Configured parallelism
            on_interrupt: Called on the first Ctrl-C; the dispatcher then keeps
                draining outcomes instead of abandoning the workers
        """
        self.run_workflow = run_workflow
        self.max_workers = max_workers
        self.on_interrupt = on_interrupt

    def run(self, jobs: List[UpgradeJob]) -> Iterator[WorkflowOutcome]:
        """
        Run all jobs and yield their outcomes as they complete.

        Args:
            jobs: One job per selected machine

        Yields:
            WorkflowOutcome per job, in arrival order
        """
        if not jobs:
            return

        workers = clamp_workers(self.max_workers, len(jobs))
        logger.info(
            f"Starting parallel upgrade with {workers} worker(s) for {len(jobs)} VM(s) "
            f"(configured parallelism: {self.max_workers})"
        )

        job_queue: "queue.Queue[UpgradeJob]" = queue.Queue(maxsize=len(jobs))
        for job in jobs:
            job_queue.put_nowait(job)

        results: "queue.Queue" = queue.Queue()
        threads = [
            threading.Thread(
                target=self._worker,
                args=(worker_id, job_queue, results),
                name=f"upgrade-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(1, workers + 1)
        ]
        for t in threads:
            t.start()

        def supervise() -> None:
            for t in threads:
                t.join()
            results.put(_DONE)

        threading.Thread(target=supervise, name="upgrade-supervisor", daemon=True).start()

        interrupted = False
        while True:
            try:
                item = self._next_result(results)
            except KeyboardInterrupt:
                if self.on_interrupt is None or interrupted:
                    raise
                interrupted = True
                logger.warning(
                    "Interrupted, cancelling upgrades and waiting for workers to stop "
                    "(press Ctrl-C again to abort immediately)"
                )
                self.on_interrupt()
                continue
            if item is _DONE:
                break
            yield item

    def _next_result(self, results: "queue.Queue"):
        return results.get()

    def _worker(
        self,
        worker_id: int,
        job_queue: "queue.Queue[UpgradeJob]",
        results: "queue.Queue",
    ) -> None:
        logger.debug(f"Worker {worker_id} started")
        while True:
            try:
                job = job_queue.get_nowait()
            except queue.Empty:
                break
            logger.info(f"Worker {worker_id} processing VM: {job.machine.name}")
            results.put(self._run_one(job))
        logger.debug(f"Worker {worker_id} finished")

    def _run_one(self, job: UpgradeJob) -> WorkflowOutcome:
        start = time.time()
        try:
            return self.run_workflow(job)
        except Exception as e:
            logger.exception(f"[{job.machine.name}] Unexpected error in workflow")
            return WorkflowOutcome(
                vm_name=job.machine.name,
                success=False,
                error=PhaseError("workflow", f"unexpected error: {e}"),
                start_time=start,
                end_time=time.time(),
            )


def run_all(
    jobs: List[UpgradeJob],
    run_workflow: Callable[[UpgradeJob], WorkflowOutcome],
    max_workers: int,
    on_outcome: Optional[Callable[[WorkflowOutcome], None]] = None,
    on_interrupt: Optional[Callable[[], None]] = None,
) -> List[WorkflowOutcome]:
    """Run jobs through a FleetDispatcher and collect every outcome."""
    outcomes: List[WorkflowOutcome] = []
    for outcome in FleetDispatcher(run_workflow, max_workers, on_interrupt).run(jobs):
        if on_outcome is not None:
            on_outcome(outcome)
        outcomes.append(outcome)
    return outcomes
