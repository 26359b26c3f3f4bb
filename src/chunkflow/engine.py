"""Engine: builds and owns every component from one EngineConfig.

    with Engine(config) as engine:
        job = engine.submit(urls, content_type="company")
        engine.wait_for_job(job.id)
"""

import logging
import time
from typing import Optional, Sequence

from .broadcaster import ProgressBroadcaster
from .controller import JobController
from .generators import ContentGenerator, build_generator
from .janitor import QueueJanitor
from .models import EngineConfig
from .queue.models import Job, JobStatus
from .queue.sqlite_backend import SQLiteChunkQueue, SQLiteDatabase, SQLiteItemStore
from .queue.worker import ChunkWorkerPool

logger = logging.getLogger(__name__)


class Engine:
    """Store, queue, workers, broadcaster, janitor and controller in one place.

    Args:
        config: Resolved configuration (defaults if omitted)
        generator: Generation backend; built from config.generator if omitted
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        generator: Optional[ContentGenerator] = None,
    ):
        self.config = config or EngineConfig()
        cfg = self.config

        self.database = SQLiteDatabase(cfg.database.path, busy_timeout_s=cfg.database.busy_timeout_s)
        self.store = SQLiteItemStore(self.database)
        self.queue = SQLiteChunkQueue(self.database)
        self.broadcaster = ProgressBroadcaster(
            max_subscribers_per_job=cfg.broadcaster.max_subscribers_per_job,
            buffer_size=cfg.broadcaster.buffer_size,
            max_retained_jobs=cfg.broadcaster.max_retained_jobs,
        )
        self.janitor = QueueJanitor(
            self.store,
            self.queue,
            interval_s=cfg.janitor.interval_s,
            startup_delay_s=cfg.janitor.startup_delay_s,
            cleanup_attempts=cfg.janitor.cleanup_attempts,
            cleanup_pause_s=cfg.janitor.cleanup_pause_s,
            completion_cleanup_delay_s=cfg.janitor.completion_cleanup_delay_s,
            stale_lease_s=cfg.workers.stale_lease_s,
            keep_completed=cfg.queue.keep_completed,
            keep_failed=cfg.queue.keep_failed,
        )
        self.controller = JobController(
            self.store,
            self.queue,
            self.broadcaster,
            self.janitor,
            chunk_size=cfg.queue.chunk_size,
            priority=cfg.queue.priority,
            max_retries=cfg.retry.max_retries,
            retry_base_delay_s=cfg.retry.base_delay_s,
            artifact_dir=cfg.database.artifact_dir,
        )
        self.generator = generator or build_generator(cfg.generator)
        self.pool = ChunkWorkerPool(
            self.store,
            self.queue,
            self.generator,
            self.broadcaster,
            n_workers=cfg.workers.count,
            poll_interval_s=cfg.workers.poll_interval_s,
            on_job_finished=self.janitor.schedule_cleanup,
        )
        self._started = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.shutdown()

    def start(self, workers: bool = True, janitor: bool = True) -> None:
        """Recover abandoned leases, then start the worker pool and janitor."""
        if self._started:
            return
        reset = self.queue.reset_stale_active(self.config.workers.stale_lease_s)
        if reset:
            logger.warning("Recovered %d abandoned chunk leases", reset)
        if workers:
            self.pool.start()
        if janitor:
            self.janitor.start()
        self._started = True

    def shutdown(self) -> None:
        self.pool.shutdown()
        self.janitor.stop()
        self.broadcaster.shutdown()
        self.generator.close()
        self.database.close()
        self._started = False
        logger.info("Engine shut down")

    def submit(
        self,
        payloads: Sequence[str],
        file_name: Optional[str] = None,
        content_type: str = "company",
        artifact_path: Optional[str] = None,
        start: bool = True,
    ) -> Job:
        """Create a job from payloads and, by default, start it."""
        job = self.controller.create_job(
            payloads, file_name=file_name, content_type=content_type, artifact_path=artifact_path
        )
        if start:
            job = self.controller.start(job.id)
        return job

    def wait_for_job(self, job_id: str, timeout: Optional[float] = None, poll_s: float = 0.05) -> Job:
        """Block until the job leaves pending/processing.

        Raises:
            TimeoutError: If the job is still running after ``timeout`` seconds
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.controller.get_status(job_id).job
            if job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
                return job
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Job {job_id} still {job.status.value} after {timeout}s")
            time.sleep(poll_s)
