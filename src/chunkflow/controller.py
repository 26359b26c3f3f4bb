"""Job lifecycle control: submit, start, stop, resume, retry and delete.

State machine:
    pending    -(start)->           processing
    processing -(all items done)->  completed
    processing -(stop)->            stopped
    stopped    -(resume)->          processing
    completed  -(retry failed)->    processing
    failed     -(retry failed)->    processing
    any        -(fatal error)->     failed
    not processing -(delete)->      removed

Every status change is a compare-and-set on the store, so repeating an
operation raises InvalidJobStateError instead of applying twice.
"""

import csv
import functools
import logging
import uuid
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel

from .broadcaster import ProgressBroadcaster
from .errors import EngineError, EngineInternalError, InvalidJobStateError, JobNotFoundError
from .janitor import QueueJanitor
from .queue.backends import ChunkQueue, ItemStore
from .queue.models import (
    ChunkConfig,
    ItemStatus,
    Job,
    JobProgress,
    JobStatus,
    ProgressEvent,
    QueueState,
    WorkItem,
)
from .queue.partitioner import DEFAULT_CHUNK_SIZE, build_chunks

logger = logging.getLogger(__name__)

_LIVE_STATES = (QueueState.PENDING, QueueState.DELAYED, QueueState.ACTIVE)

EXPORT_COLUMNS = ["position", "payload", "status", "result", "error", "retry_count"]


class JobSnapshot(BaseModel):
    """Job row plus live item counts."""

    job: Job
    progress: JobProgress


def _control_operation(fn):
    """Let typed engine errors through; wrap anything else as internal."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except EngineError:
            raise
        except Exception as e:
            logger.exception("%s failed", fn.__name__)
            raise EngineInternalError(f"{fn.__name__} failed: {e}") from e

    return wrapper


class JobController:
    """Control surface over the store, queue, broadcaster and janitor.

    Args:
        store: Item store
        queue: Durable chunk queue
        broadcaster: Progress hub
        janitor: Used for synchronous and deferred per-job cleanup
        chunk_size: Items per chunk
        priority: Queue priority of enqueued chunks
        max_retries: Attempts per item, carried in every chunk
        retry_base_delay_s: Backoff base, carried in every chunk
        artifact_dir: Default directory for result exports
    """

    def __init__(
        self,
        store: ItemStore,
        queue: ChunkQueue,
        broadcaster: ProgressBroadcaster,
        janitor: QueueJanitor,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        priority: int = 1,
        max_retries: int = 3,
        retry_base_delay_s: float = 1.0,
        artifact_dir: Optional[str] = None,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.store = store
        self.queue = queue
        self.broadcaster = broadcaster
        self.janitor = janitor
        self.chunk_size = chunk_size
        self.priority = priority
        self.max_retries = max_retries
        self.retry_base_delay_s = retry_base_delay_s
        self.artifact_dir = Path(artifact_dir) if artifact_dir else None

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------

    @_control_operation
    def create_job(
        self,
        payloads: Sequence[str],
        file_name: Optional[str] = None,
        content_type: str = "company",
        artifact_path: Optional[str] = None,
    ) -> Job:
        """Create a pending job with one work item per payload."""
        job_id = str(uuid.uuid4())
        self.store.create_job(
            job_id,
            total_items=len(payloads),
            file_name=file_name,
            content_type=content_type,
            artifact_path=artifact_path,
        )
        self.store.create_items(job_id, payloads)
        return self.store.get_job(job_id)

    @_control_operation
    def get_status(self, job_id: str) -> JobSnapshot:
        job = self._require(job_id)
        return JobSnapshot(job=job, progress=self.store.get_progress(job_id))

    @_control_operation
    def list_jobs(self, limit: int = 100) -> List[Job]:
        return self.store.list_jobs(limit)

    @_control_operation
    def list_items(self, job_id: str, offset: int = 0, limit: int = 100) -> List[WorkItem]:
        self._require(job_id)
        return self.store.list_items_paged(job_id, offset=offset, limit=limit)

    @_control_operation
    def export_results(self, job_id: str, path: Optional[str] = None) -> Path:
        """Write item outcomes as CSV, in input order.

        Defaults to ``<artifact_dir>/<job_id>-results.csv``.
        """
        self._require(job_id)
        if path is None:
            base = self.artifact_dir or Path(".")
            path = base / f"{job_id}-results.csv"
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)

        items = self.store.list_items(job_id)
        with open(out, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for item in items:
                writer.writerow({
                    "position": item.position,
                    "payload": item.payload,
                    "status": item.status.value,
                    "result": item.result or "",
                    "error": item.error or "",
                    "retry_count": item.retry_count,
                })

        logger.info("Exported %d results of job %s to %s", len(items), job_id, out)
        return out

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @_control_operation
    def start(self, job_id: str) -> Job:
        """Begin processing a pending job.

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobStateError: Job is not pending
        """
        job = self._require(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidJobStateError(job_id, job.status.value, "start")

        self.store.reset_items(job_id)
        items = self.store.list_items(job_id)

        if not items:
            updated = self._transition(
                job_id, JobStatus.COMPLETED, "start",
                expected=[JobStatus.PENDING], processed=0, failed=0,
            )
            self._publish(updated, JobProgress())
            logger.info("Job %s has no items, completed immediately", job_id)
            return updated

        updated = self._transition(
            job_id, JobStatus.PROCESSING, "start",
            expected=[JobStatus.PENDING], processed=0, failed=0, bump_generation=True,
        )
        chunks = self._enqueue(updated, items)
        self._publish(updated, self.store.get_progress(job_id))
        logger.info("Started job %s: %d items in %d chunks", job_id, len(items), chunks)
        return updated

    @_control_operation
    def stop(self, job_id: str) -> bool:
        """Cooperatively stop a processing job.

        Queued chunks are removed; leased chunks are flagged and their
        workers stop before the next item. Items already in flight finish.

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobStateError: Job is not processing (including already stopped)
        """
        self._require(job_id)
        self._transition(job_id, JobStatus.STOPPED, "stop", expected=[JobStatus.PROCESSING])

        removed = flagged = 0
        for entry in self.queue.list_entries(_LIVE_STATES, job_id=job_id):
            if entry.state != QueueState.ACTIVE and self.queue.remove(entry.id):
                removed += 1
            elif self.queue.request_cancel(entry.id):
                flagged += 1

        self.store.refresh_counts(job_id, expected=[JobStatus.STOPPED])
        job = self.store.get_job(job_id)
        self._publish(job, self.store.get_progress(job_id))
        self.janitor.schedule_cleanup(job_id)

        logger.info(
            "Stopped job %s: removed %d queued chunks, flagged %d active",
            job_id, removed, flagged,
        )
        return True

    @_control_operation
    def resume(self, job_id: str) -> bool:
        """Re-enqueue the unfinished items of a stopped job.

        Pending and failed items are re-run; items stuck in 'processing' are
        included only when no leased chunk of the job survived cleanup.

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobStateError: Job is not stopped
        """
        job = self._require(job_id)
        if job.status != JobStatus.STOPPED:
            raise InvalidJobStateError(job_id, job.status.value, "resume")

        remaining = self.janitor.cleanup_job(job_id)
        rerun_statuses = {ItemStatus.PENDING, ItemStatus.FAILED}
        if remaining:
            logger.warning(
                "Resuming job %s with %d chunk(s) still leased; they belong to "
                "generation %d and will be discarded",
                job_id, remaining, job.generation,
            )
        else:
            rerun_statuses.add(ItemStatus.PROCESSING)

        to_run = [i for i in self.store.list_items(job_id) if i.status in rerun_statuses]

        if not to_run:
            progress = self.store.get_progress(job_id)
            updated = self._transition(
                job_id, JobStatus.COMPLETED, "resume",
                expected=[JobStatus.STOPPED],
                processed=progress.processed, failed=progress.failed,
            )
            self._publish(updated, progress)
            self.janitor.schedule_cleanup(job_id)
            logger.info("Resumed job %s had nothing left to do, completed", job_id)
            return True

        # Items are reset while the job is still stopped
        reset_ids = [i.id for i in to_run if i.status != ItemStatus.PENDING]
        if reset_ids:
            self.store.reset_items(job_id, item_ids=reset_ids)

        progress = self.store.get_progress(job_id)
        updated = self._transition(
            job_id, JobStatus.PROCESSING, "resume",
            expected=[JobStatus.STOPPED],
            processed=progress.processed, failed=progress.failed,
            bump_generation=True,
        )
        chunks = self._enqueue(updated, to_run)
        self._publish(updated, progress)
        logger.info(
            "Resumed job %s: %d items in %d chunks (generation %d)",
            job_id, len(to_run), chunks, updated.generation,
        )
        return True

    @_control_operation
    def retry_failed(self, job_id: str, item_ids: Optional[Iterable[str]] = None) -> int:
        """Reset failed items (all, or the given subset) to pending.

        A completed or failed job goes back to processing under a new
        generation and only the reset items (plus any left unfinished by a
        fatal error) are enqueued. A stopped or pending job just gets its
        items reset; resume or start will pick them up.

        Returns:
            Number of items reset

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobStateError: Job is processing
        """
        job = self._require(job_id)
        if job.status == JobStatus.PROCESSING:
            raise InvalidJobStateError(job_id, job.status.value, "retry")

        failed_items = self.store.list_items(job_id, ItemStatus.FAILED)
        if item_ids is not None:
            wanted = set(item_ids)
            targets = [i for i in failed_items if i.id in wanted]
        else:
            targets = failed_items
        if not targets:
            return 0

        self.store.reset_items(
            job_id, statuses=[ItemStatus.FAILED], item_ids=[i.id for i in targets]
        )
        progress = self.store.get_progress(job_id)

        if not job.status.is_terminal:
            self.store.refresh_counts(job_id, expected=[job.status])
            logger.info("Reset %d failed items of %s job %s", len(targets), job.status.value, job_id)
            return len(targets)

        updated = self._transition(
            job_id, JobStatus.PROCESSING, "retry",
            expected=[JobStatus.COMPLETED, JobStatus.FAILED],
            processed=progress.processed, failed=progress.failed,
            bump_generation=True,
        )
        to_run = [
            i for i in self.store.list_items(job_id)
            if i.status in (ItemStatus.PENDING, ItemStatus.PROCESSING)
        ]
        chunks = self._enqueue(updated, to_run)
        self._publish(updated, progress)
        logger.info(
            "Retrying %d failed items of job %s (%d items in %d chunks)",
            len(targets), job_id, len(to_run), chunks,
        )
        return len(targets)

    @_control_operation
    def delete(self, job_id: str) -> bool:
        """Delete a job, its items, its queue entries and its stored artifact.

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobStateError: Job is processing
        """
        job = self._require(job_id)
        if job.status == JobStatus.PROCESSING:
            raise InvalidJobStateError(job_id, job.status.value, "delete")

        remaining = self.janitor.cleanup_job(job_id)
        if remaining:
            logger.warning("Deleting job %s with %d queue entries left to the janitor",
                           job_id, remaining)

        self.store.delete_job(job_id)

        if job.artifact_path:
            try:
                Path(job.artifact_path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove artifact %s: %s", job.artifact_path, e)

        self.broadcaster.forget(job_id)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _transition(
        self,
        job_id: str,
        status: JobStatus,
        operation: str,
        expected: Sequence[JobStatus],
        processed: Optional[int] = None,
        failed: Optional[int] = None,
        bump_generation: bool = False,
    ) -> Job:
        updated = self.store.update_job_status(
            job_id,
            status,
            processed=processed,
            failed=failed,
            expected=expected,
            bump_generation=bump_generation,
        )
        if updated is None:
            current = self._require(job_id)
            raise InvalidJobStateError(job_id, current.status.value, operation)
        return updated

    def _enqueue(self, job: Job, items: Sequence[WorkItem]) -> int:
        config = ChunkConfig(
            content_type=job.content_type,
            max_retries=self.max_retries,
            retry_base_delay_s=self.retry_base_delay_s,
        )
        chunks = build_chunks(job.id, items, self.chunk_size, config, job.generation)
        for chunk in chunks:
            self.queue.enqueue(chunk, priority=self.priority)
        return len(chunks)

    def _publish(self, job: Job, progress: JobProgress) -> None:
        self.broadcaster.publish(job.id, ProgressEvent.from_progress(job.id, job.status, progress))
