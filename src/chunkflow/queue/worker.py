"""Worker pool executing chunks from the durable queue.

This module provides concurrent chunk processing with:
- ThreadPoolExecutor running N long-lived dequeue loops
- Sequential items within a chunk, each with bounded retry
- Error classification (permanent vs transient)
- Cooperative stop checks before every item
- Atomic aggregate updates and compare-and-set completion
- Graceful shutdown that interrupts backoff sleeps
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, NamedTuple, Optional

from ..broadcaster import ProgressBroadcaster
from ..errors import ErrorKind, classify_error
from ..generators import ContentGenerator
from .backends import ChunkQueue, ItemStore
from .models import ChunkConfig, ChunkPayload, ItemStatus, JobStatus, ProgressEvent, QueueEntry

logger = logging.getLogger(__name__)


class GenerationOutcome(NamedTuple):
    result: Optional[str]
    error: Optional[str]
    attempts: int
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None


def generate_with_retry(
    generator: ContentGenerator,
    payload: str,
    config: ChunkConfig,
    stop_event: Optional[threading.Event] = None,
) -> GenerationOutcome:
    """Call the generator up to ``config.max_retries`` times.

    Args:
        generator: Backend to call
        payload: Item payload
        config: Retry policy and content type carried by the chunk
        stop_event: Set on shutdown; interrupts the backoff wait

    Returns:
        GenerationOutcome with the result or the last error, and attempts made

    Retry logic:
    - Permanent errors fail immediately after one attempt
    - Transient errors wait base * 2^(attempt-1) before the next attempt
    """
    stop_event = stop_event or threading.Event()
    last_error = None

    for attempt in range(1, config.max_retries + 1):
        try:
            return GenerationOutcome(generator.generate(payload, config), None, attempt)
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
            if classify_error(e) == ErrorKind.PERMANENT:
                logger.debug("Permanent error, not retrying: %s", last_error)
                return GenerationOutcome(None, last_error, attempt)

        if attempt < config.max_retries:
            delay = config.retry_base_delay_s * (2 ** (attempt - 1))
            logger.debug(
                "Retrying (attempt %d/%d) after %.2fs: %s",
                attempt + 1, config.max_retries, delay, last_error,
            )
            if stop_event.wait(delay):
                return GenerationOutcome(None, last_error, attempt, interrupted=True)

    return GenerationOutcome(None, last_error, config.max_retries)


class ChunkWorkerPool:
    """ThreadPoolExecutor-based pool of chunk executors.

    Features:
    - N worker loops polling the durable queue
    - Context manager for graceful shutdown
    - Item-level failures never fail the job; unexpected errors do

    Args:
        store: Item store
        queue: Durable chunk queue
        generator: Content generation backend
        broadcaster: Progress hub
        n_workers: Concurrent chunk executors
        poll_interval_s: Wait between dequeue attempts on an empty queue
        on_job_finished: Called with the job id after completion or fatal failure
    """

    def __init__(
        self,
        store: ItemStore,
        queue: ChunkQueue,
        generator: ContentGenerator,
        broadcaster: ProgressBroadcaster,
        n_workers: int = 10,
        poll_interval_s: float = 0.5,
        on_job_finished: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.queue = queue
        self.generator = generator
        self.broadcaster = broadcaster
        self.n_workers = n_workers
        self.poll_interval_s = poll_interval_s
        self.on_job_finished = on_job_finished
        self._stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._instance = uuid.uuid4().hex[:8]

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.shutdown()

    @property
    def running(self) -> bool:
        return self._executor is not None and not self._stop_event.is_set()

    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Worker pool already started")
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="chunk-worker"
        )
        self._futures = [
            self._executor.submit(self._worker_loop, self._worker_id(i))
            for i in range(self.n_workers)
        ]
        logger.info("Started %d chunk workers", self.n_workers)

    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for in-flight items to finish
        """
        self._stop_event.set()
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None
            self._futures = []
            logger.info("Worker pool stopped")

    def _worker_id(self, index: int) -> str:
        return f"worker-{self._instance}-{index}"

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            try:
                entry = self.queue.dequeue(worker_id)
            except Exception:
                logger.exception("%s: dequeue failed", worker_id)
                self._stop_event.wait(self.poll_interval_s)
                continue

            if entry is None:
                self._stop_event.wait(self.poll_interval_s)
                continue

            self.process_entry(entry, worker_id)

    def run_once(self, worker_id: Optional[str] = None) -> bool:
        """Lease and process one entry in the calling thread.

        Returns:
            False if the queue had nothing available
        """
        worker_id = worker_id or f"inline-{self._instance}"
        entry = self.queue.dequeue(worker_id)
        if entry is None:
            return False
        self.process_entry(entry, worker_id)
        return True

    def run_until_idle(self, worker_id: Optional[str] = None) -> int:
        """Process entries in the calling thread until the queue is empty."""
        count = 0
        while not self._stop_event.is_set() and self.run_once(worker_id):
            count += 1
        return count

    def process_entry(self, entry: QueueEntry, worker_id: str) -> None:
        """Execute one leased entry; never raises."""
        if entry.is_malformed:
            logger.warning("%s: malformed chunk %s: %s", worker_id, entry.id, entry.parse_error)
            try:
                self.queue.fail(entry.id, f"Malformed chunk: {entry.parse_error}")
            except Exception:
                logger.exception("Could not mark malformed chunk %s failed", entry.id)
            return

        chunk = entry.chunk
        try:
            self._run_chunk(entry.id, chunk, worker_id)
        except Exception as e:
            logger.exception(
                "%s: fatal error in chunk %s of job %s", worker_id, chunk.sequence, chunk.job_id
            )
            self._fail_job(entry.id, chunk, f"{type(e).__name__}: {e}")

    def _run_chunk(self, ref: str, chunk: ChunkPayload, worker_id: str) -> None:
        job_id = chunk.job_id
        logger.info(
            "%s: chunk %d of job %s (%d items, generation %d)",
            worker_id, chunk.sequence, job_id, len(chunk.items), chunk.generation,
        )

        processed = failed = 0
        removed = released = False

        for item in chunk.items:
            job = self.store.get_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                logger.info(
                    "%s: job %s is %s, abandoning chunk %d",
                    worker_id, job_id, job.status.value if job else "gone", chunk.sequence,
                )
                break
            if job.generation != chunk.generation:
                logger.info(
                    "%s: chunk %d of job %s is stale (generation %d, job at %d)",
                    worker_id, chunk.sequence, job_id, chunk.generation, job.generation,
                )
                self._fail_stranded(chunk)
                break
            if self.queue.is_cancel_requested(ref):
                removed = self.queue.remove(ref, worker_id=worker_id)
                logger.info("%s: chunk %d of job %s cancelled", worker_id, chunk.sequence, job_id)
                break

            current = self.store.get_item(item.id)
            if current is None:
                break
            if current.status in (ItemStatus.COMPLETED, ItemStatus.FAILED):
                # Redelivered chunk: the item already has its outcome
                continue

            self.store.claim_item(item.id, chunk.generation)
            self.queue.heartbeat(ref)

            outcome = generate_with_retry(self.generator, item.payload, chunk.config, self._stop_event)

            if outcome.interrupted:
                self.store.update_item_status(item.id, ItemStatus.PENDING)
                released = self.queue.release(ref, worker_id)
                logger.info("%s: shutdown during chunk %d of job %s, lease released",
                            worker_id, chunk.sequence, job_id)
                break

            if outcome.ok:
                self.store.update_item_status(
                    item.id, ItemStatus.COMPLETED,
                    result=outcome.result, retry_count=outcome.attempts,
                )
                processed += 1
                logger.debug("Item %s completed after %d attempt(s)", item.id, outcome.attempts)
            else:
                self.store.update_item_status(
                    item.id, ItemStatus.FAILED,
                    error=outcome.error, retry_count=outcome.attempts,
                )
                failed += 1
                logger.debug("Item %s failed after %d attempt(s): %s",
                             item.id, outcome.attempts, outcome.error)

            self._publish_progress(job_id, current_item=item.id)

        if processed or failed:
            applied = self.store.apply_chunk_result(job_id, chunk.generation, processed, failed)
            if not applied:
                # Stopped while an item was in flight: counts follow item statuses
                self.store.refresh_counts(
                    job_id, expected=[JobStatus.STOPPED], generation=chunk.generation
                )

        if not (removed or released):
            self.queue.complete(ref)

        logger.info(
            "%s: chunk %d of job %s done (%d completed, %d failed)",
            worker_id, chunk.sequence, job_id, processed, failed,
        )
        self.check_completion(job_id)

    def check_completion(self, job_id: str) -> bool:
        """Finish the job if no pending or processing items remain.

        The processing -> completed transition is a compare-and-set, so only
        one worker wins and a concurrent stop always takes precedence.
        """
        job = self.store.get_job(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False

        progress = self.store.get_progress(job_id)
        if progress.pending > 0:
            return False

        updated = self.store.update_job_status(
            job_id,
            JobStatus.COMPLETED,
            processed=progress.processed,
            failed=progress.failed,
            expected=[JobStatus.PROCESSING],
        )
        if updated is None:
            return False

        logger.info(
            "Job %s completed: %d processed, %d failed",
            job_id, updated.processed_count, updated.failed_count,
        )
        self.broadcaster.publish(
            job_id, ProgressEvent.from_progress(job_id, JobStatus.COMPLETED, progress)
        )
        self._notify_finished(job_id)
        return True

    def _fail_stranded(self, chunk: ChunkPayload) -> None:
        """Fail items a crashed run of this stale chunk left in 'processing'.

        A resume that ran while the chunk was still leased excluded them, so
        no live chunk will ever pick them up. Only items still claimed by this
        chunk's generation are touched; a newer run's claim wins.
        """
        stranded = self.store.fail_stranded_items(
            [item.id for item in chunk.items],
            chunk.generation,
            "Interrupted: chunk superseded by a newer run",
        )
        for item_id in stranded:
            logger.warning("Item %s was stranded by stale chunk %d of job %s",
                           item_id, chunk.sequence, chunk.job_id)

    def _publish_progress(self, job_id: str, current_item: Optional[str] = None) -> None:
        job = self.store.get_job(job_id)
        if job is None:
            return
        progress = self.store.get_progress(job_id)
        self.broadcaster.publish(
            job_id,
            ProgressEvent.from_progress(job_id, job.status, progress, current_item=current_item),
        )

    def _fail_job(self, ref: str, chunk: ChunkPayload, error: str) -> None:
        job_id = chunk.job_id
        try:
            self.queue.fail(ref, error)
            job = self.store.get_job(job_id)
            if job is None or job.generation != chunk.generation:
                return
            updated = self.store.update_job_status(
                job_id, JobStatus.FAILED, expected=[JobStatus.PROCESSING], error=error
            )
            if updated is None:
                return
            progress = self.store.get_progress(job_id)
            self.broadcaster.publish(
                job_id,
                ProgressEvent.from_progress(job_id, JobStatus.FAILED, progress, error=error),
            )
            logger.error("Job %s failed: %s", job_id, error)
        except Exception:
            logger.exception("Could not record failure of job %s", job_id)
            return
        self._notify_finished(job_id)

    def _notify_finished(self, job_id: str) -> None:
        if self.on_job_finished is None:
            return
        try:
            self.on_job_finished(job_id)
        except Exception:
            logger.exception("on_job_finished callback failed for job %s", job_id)
