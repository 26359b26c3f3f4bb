"""Queue janitor: reconciles the durable queue against the item store.

Periodic sweep passes:
1. Malformed: entries whose payload is not a chunk message are force-removed
2. Orphans: entries of jobs that are missing or completed/failed are removed
   (leased ones are flagged for cooperative stop instead)
3. Housekeeping: abandoned leases are returned to pending and finished
   entries are pruned to the retention limits

Per-job cleanup runs on demand (resume) or on a timer after a job finishes
or is stopped. Both run on one daemon thread.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from .queue.backends import ChunkQueue, ItemStore
from .queue.models import QueueEntry, QueueState

logger = logging.getLogger(__name__)

_LIVE_STATES = (QueueState.PENDING, QueueState.DELAYED, QueueState.ACTIVE)


class SweepReport(BaseModel):
    malformed_removed: int = 0
    orphans_removed: int = 0
    orphans_flagged: int = 0
    stale_reset: int = 0
    pruned: int = 0

    @property
    def total(self) -> int:
        return (
            self.malformed_removed
            + self.orphans_removed
            + self.orphans_flagged
            + self.stale_reset
            + self.pruned
        )


class QueueJanitor:
    def __init__(
        self,
        store: ItemStore,
        queue: ChunkQueue,
        interval_s: float = 300.0,
        startup_delay_s: float = 5.0,
        cleanup_attempts: int = 3,
        cleanup_pause_s: float = 1.0,
        completion_cleanup_delay_s: float = 5.0,
        stale_lease_s: float = 600.0,
        keep_completed: int = 10,
        keep_failed: int = 50,
    ):
        self.store = store
        self.queue = queue
        self.interval_s = interval_s
        self.startup_delay_s = startup_delay_s
        self.cleanup_attempts = cleanup_attempts
        self.cleanup_pause_s = cleanup_pause_s
        self.completion_cleanup_delay_s = completion_cleanup_delay_s
        self.stale_lease_s = stale_lease_s
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

        self._cond = threading.Condition()
        self._stop_event = threading.Event()
        self._scheduled: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def sweep(self) -> SweepReport:
        """Run every reconciliation pass once."""
        report = SweepReport()
        entries = self.queue.list_entries()

        valid: List[QueueEntry] = []
        for entry in entries:
            if entry.is_malformed:
                if self._best_effort(self.queue.force_remove, entry.id):
                    report.malformed_removed += 1
                    logger.warning("Removed malformed queue entry %s: %s",
                                   entry.id, entry.parse_error)
            else:
                valid.append(entry)

        by_job: Dict[str, List[QueueEntry]] = defaultdict(list)
        for entry in valid:
            by_job[entry.chunk.job_id].append(entry)

        for job_id, job_entries in by_job.items():
            job = self.store.get_job(job_id)
            if job is not None and not job.status.is_terminal:
                continue
            reason = "missing" if job is None else job.status.value
            for entry in job_entries:
                if entry.state == QueueState.ACTIVE:
                    if self._best_effort(self.queue.request_cancel, entry.id):
                        report.orphans_flagged += 1
                elif self._best_effort(self.queue.remove, entry.id):
                    report.orphans_removed += 1
            logger.info("Reconciled %d orphaned entries of %s job %s",
                        len(job_entries), reason, job_id)

        report.stale_reset = self.queue.reset_stale_active(self.stale_lease_s)
        report.pruned = self.queue.prune_finished(self.keep_completed, self.keep_failed)

        if report.total:
            logger.info("Janitor sweep: %s", report.model_dump())
        return report

    def cleanup_job(self, job_id: str) -> int:
        """Remove every live entry of a job, flagging leased ones.

        Returns:
            Number of live entries still present after the last attempt
        """
        remaining: List[QueueEntry] = []
        for attempt in range(1, self.cleanup_attempts + 1):
            entries = self.queue.list_entries(_LIVE_STATES, job_id=job_id)
            for entry in entries:
                if entry.state == QueueState.ACTIVE:
                    self._best_effort(self.queue.request_cancel, entry.id)
                else:
                    self._best_effort(self.queue.remove, entry.id)

            remaining = self.queue.list_entries(_LIVE_STATES, job_id=job_id)
            if not remaining:
                if entries:
                    logger.info("Cleaned up %d queue entries of job %s", len(entries), job_id)
                return 0
            if attempt < self.cleanup_attempts and self._stop_event.wait(self.cleanup_pause_s):
                break

        logger.warning(
            "%d queue entries of job %s could not be removed (leased: %s)",
            len(remaining), job_id, ", ".join(e.id for e in remaining),
        )
        return len(remaining)

    def _best_effort(self, fn, ref: str) -> bool:
        try:
            return bool(fn(ref))
        except Exception as e:
            logger.warning("Queue operation %s(%s) failed: %s", fn.__name__, ref, e)
            return False

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_cleanup(self, job_id: str, delay_s: Optional[float] = None) -> None:
        """Run cleanup_job(job_id) after a delay on the janitor thread."""
        delay_s = self.completion_cleanup_delay_s if delay_s is None else delay_s
        with self._cond:
            heapq.heappush(self._scheduled, (time.monotonic() + delay_s, next(self._seq), job_id))
            self._cond.notify()
        if self._thread is None:
            logger.debug("Cleanup of job %s queued; janitor thread not running", job_id)

    def scheduled_jobs(self) -> List[str]:
        with self._cond:
            return [job_id for _, _, job_id in sorted(self._scheduled)]

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="queue-janitor", daemon=True)
        self._thread.start()
        logger.info(
            "Janitor started (first sweep in %.1fs, then every %.1fs)",
            self.startup_delay_s, self.interval_s,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    def _run(self) -> None:
        next_sweep = time.monotonic() + self.startup_delay_s
        while True:
            with self._cond:
                while not self._stop_event.is_set():
                    wake = next_sweep
                    if self._scheduled:
                        wake = min(wake, self._scheduled[0][0])
                    now = time.monotonic()
                    if wake <= now:
                        break
                    self._cond.wait(wake - now)
                if self._stop_event.is_set():
                    return

                now = time.monotonic()
                due = []
                while self._scheduled and self._scheduled[0][0] <= now:
                    due.append(heapq.heappop(self._scheduled)[2])
                sweep_due = now >= next_sweep

            for job_id in due:
                try:
                    self.cleanup_job(job_id)
                except Exception:
                    logger.exception("Cleanup of job %s failed", job_id)

            if sweep_due:
                try:
                    self.sweep()
                except Exception:
                    logger.exception("Janitor sweep failed")
                next_sweep = time.monotonic() + self.interval_s
