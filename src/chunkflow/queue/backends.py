from __future__ import annotations

"""Abstract base classes for the item store and the durable chunk queue.

These interfaces let the controller, worker pool and janitor run against the
local-first SQLite implementation while staying open to other backends.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Sequence

if TYPE_CHECKING:
    from .models import (
        ChunkPayload,
        ItemStatus,
        Job,
        JobProgress,
        JobStatus,
        QueueEntry,
        QueueState,
        WorkItem,
    )


class ItemStore(ABC):
    """Durable storage for jobs and their work items.

    Implementations must provide:
    - Atomic aggregate updates (no read-modify-write of counts)
    - Compare-and-set status transitions
    - Cascade delete of items with their job
    """

    @abstractmethod
    def create_job(
        self,
        job_id: str,
        total_items: int,
        file_name: Optional[str] = None,
        content_type: str = "company",
        artifact_path: Optional[str] = None,
    ) -> "Job":
        """Insert a new job in status 'pending'."""
        pass

    @abstractmethod
    def create_items(self, job_id: str, payloads: Sequence[str]) -> List["WorkItem"]:
        """Insert work items in input order, all 'pending'."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        pass

    @abstractmethod
    def list_jobs(self, limit: int = 100) -> List["Job"]:
        pass

    @abstractmethod
    def update_job_status(
        self,
        job_id: str,
        status: "JobStatus",
        processed: Optional[int] = None,
        failed: Optional[int] = None,
        expected: Optional[Iterable["JobStatus"]] = None,
        bump_generation: bool = False,
        error: Optional[str] = None,
    ) -> Optional["Job"]:
        """Set job status and optionally its counts.

        Args:
            job_id: Job identifier
            status: New status
            processed: New processed_count (clamped to the invariant)
            failed: New failed_count (clamped to the invariant)
            expected: If given, only transition from one of these statuses
            bump_generation: Increment the job's generation
            error: Fatal error message to record

        Returns:
            Updated job, or None if the job is missing or the guard failed
        """
        pass

    @abstractmethod
    def apply_chunk_result(
        self, job_id: str, generation: int, processed: int, failed: int
    ) -> bool:
        """Atomically add chunk deltas to the job aggregates.

        Only applied while the job is 'processing' in the given generation.
        """
        pass

    @abstractmethod
    def refresh_counts(
        self,
        job_id: str,
        expected: Optional[Iterable["JobStatus"]] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """Overwrite the job aggregates with counts derived from item statuses."""
        pass

    @abstractmethod
    def update_item_status(
        self,
        item_id: str,
        status: "ItemStatus",
        result: Optional[str] = None,
        error: Optional[str] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        pass

    @abstractmethod
    def claim_item(self, item_id: str, generation: int) -> None:
        """Mark an item 'processing' on behalf of a chunk of ``generation``."""
        pass

    @abstractmethod
    def fail_stranded_items(
        self, item_ids: Iterable[str], generation: int, error: str
    ) -> List[str]:
        """Fail items still 'processing' under ``generation``.

        The check and the write are one statement, so an item reclaimed by
        a newer generation or finished meanwhile is left alone.

        Returns:
            Ids of the items that were failed
        """
        pass

    @abstractmethod
    def reset_items(
        self,
        job_id: str,
        statuses: Optional[Iterable["ItemStatus"]] = None,
        item_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Reset matching items to 'pending' and clear result/error."""
        pass

    @abstractmethod
    def get_item(self, item_id: str) -> Optional["WorkItem"]:
        pass

    @abstractmethod
    def list_items(
        self, job_id: str, status: Optional["ItemStatus"] = None
    ) -> List["WorkItem"]:
        pass

    @abstractmethod
    def list_items_paged(
        self, job_id: str, offset: int = 0, limit: int = 100
    ) -> List["WorkItem"]:
        pass

    @abstractmethod
    def get_progress(self, job_id: str) -> "JobProgress":
        """Count items by status; processing items count as pending."""
        pass

    @abstractmethod
    def delete_job(self, job_id: str) -> bool:
        pass


class ChunkQueue(ABC):
    """Durable queue of chunk messages.

    Implementations must provide:
    - Thread-safe atomic dequeue (lease) operations
    - Removal that refuses entries leased by another worker
    - In-place mutation of an entry's chunk (cooperative stop flag)
    - Crash recovery via reset_stale_active()
    """

    @abstractmethod
    def enqueue(
        self, chunk: "ChunkPayload", priority: int = 1, delay_s: float = 0.0
    ) -> str:
        """Add a chunk; returns the entry reference."""
        pass

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["QueueEntry"]:
        """Atomically lease the next available entry.

        Implementation notes:
        - MUST be thread-safe (multiple workers calling concurrently)
        - Higher priority first, then FIFO
        - Due delayed entries are eligible
        """
        pass

    @abstractmethod
    def list_entries(
        self,
        states: Optional[Iterable["QueueState"]] = None,
        job_id: Optional[str] = None,
    ) -> List["QueueEntry"]:
        pass

    def list_pending(self) -> List["QueueEntry"]:
        from .models import QueueState

        return self.list_entries([QueueState.PENDING])

    def list_active(self) -> List["QueueEntry"]:
        from .models import QueueState

        return self.list_entries([QueueState.ACTIVE])

    def list_delayed(self) -> List["QueueEntry"]:
        from .models import QueueState

        return self.list_entries([QueueState.DELAYED])

    def list_completed(self) -> List["QueueEntry"]:
        from .models import QueueState

        return self.list_entries([QueueState.COMPLETED])

    def list_failed(self) -> List["QueueEntry"]:
        from .models import QueueState

        return self.list_entries([QueueState.FAILED])

    @abstractmethod
    def get_entry(self, ref: str) -> Optional["QueueEntry"]:
        pass

    @abstractmethod
    def remove(self, ref: str, worker_id: Optional[str] = None) -> bool:
        """Remove an entry.

        Returns False (without raising) when the entry is leased by a worker
        other than ``worker_id`` or no longer exists.
        """
        pass

    @abstractmethod
    def force_remove(self, ref: str) -> bool:
        """Remove an entry regardless of its state."""
        pass

    @abstractmethod
    def mutate_in_place(
        self, ref: str, fn: Callable[["ChunkPayload"], "ChunkPayload"]
    ) -> bool:
        """Rewrite the entry's chunk with ``fn``; False if missing or malformed."""
        pass

    def request_cancel(self, ref: str) -> bool:
        """Set the cooperative-stop flag on an entry."""
        return self.mutate_in_place(
            ref, lambda chunk: chunk.model_copy(update={"cancel_requested": True})
        )

    @abstractmethod
    def is_cancel_requested(self, ref: str) -> bool:
        """True if the flag is set or the entry is gone."""
        pass

    @abstractmethod
    def complete(self, ref: str) -> None:
        pass

    @abstractmethod
    def fail(self, ref: str, error: str) -> None:
        pass

    @abstractmethod
    def release(self, ref: str, worker_id: str) -> bool:
        """Return a leased entry to 'pending' (worker shutdown mid-chunk)."""
        pass

    @abstractmethod
    def heartbeat(self, ref: str) -> None:
        pass

    @abstractmethod
    def reset_stale_active(self, timeout_s: float = 600) -> int:
        pass

    @abstractmethod
    def prune_finished(self, keep_completed: int = 10, keep_failed: int = 50) -> int:
        pass

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Entry counts per state."""
        pass
