"""Pydantic models for jobs, work items, chunks and progress events.

This module defines the type-safe records shared by the item store, the
durable chunk queue, the worker pool and the progress broadcaster.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import MalformedChunkError


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        pending    → processing  (start)
        processing → completed   (every item completed or failed)
        processing → stopped     (stop)
        stopped    → processing  (resume)
        completed  → processing  (retry failed items)
        failed     → processing  (retry failed items)
        *          → failed      (fatal worker error)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ItemStatus(str, Enum):
    """Work item states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueState(str, Enum):
    """Chunk queue entry states."""

    PENDING = "pending"  # Waiting for a worker
    ACTIVE = "active"  # Leased by a worker
    DELAYED = "delayed"  # Not available until available_at
    COMPLETED = "completed"  # Finished, kept for retention
    FAILED = "failed"  # Fatal error or unparseable payload


class Job(BaseModel):
    """Durable job record."""

    id: str = Field(..., description="Job identifier (UUID)")
    status: JobStatus = Field(default=JobStatus.PENDING)
    total_items: int = Field(default=0, ge=0)
    processed_count: int = Field(default=0, ge=0, description="Items completed")
    failed_count: int = Field(default=0, ge=0, description="Items failed")
    generation: int = Field(
        default=0, ge=0, description="Bumped by start/resume/retry; stale chunks are discarded"
    )
    file_name: Optional[str] = Field(default=None, description="Uploaded file name")
    content_type: str = Field(default="company", description="Prompt template key")
    artifact_path: Optional[str] = Field(default=None, description="Stored upload or export")
    error: Optional[str] = Field(default=None, description="Fatal error, if any")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def progress_pct(self) -> float:
        if self.total_items == 0:
            return 0.0
        return 100.0 * (self.processed_count + self.failed_count) / self.total_items


class WorkItem(BaseModel):
    """One unit of work owned by a job."""

    id: str
    job_id: str
    position: int = Field(default=0, ge=0, description="Order within the uploaded file")
    payload: str
    status: ItemStatus = Field(default=ItemStatus.PENDING)
    result: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = Field(default=0, ge=0, description="Attempts in the latest run")
    generation: int = Field(default=0, ge=0, description="Run that last claimed the item")


class JobProgress(BaseModel):
    """Item status counts read from the store.

    ``pending`` includes items currently being processed.
    """

    total: int = 0
    processed: int = 0
    failed: int = 0
    pending: int = 0


class ChunkConfig(BaseModel):
    """Processing settings carried inside every chunk."""

    model_config = ConfigDict(extra="forbid")

    content_type: str = Field(default="company")
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_s: float = Field(default=1.0, ge=0.0)


class ChunkItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    payload: str


class ChunkPayload(BaseModel):
    """Chunk message stored in the durable queue.

    The ``kind`` tag makes validation strict: anything in the queue that does
    not parse into this shape is a malformed entry.
    """

    model_config = ConfigDict(extra="forbid")

    kind: Literal["process-chunk"] = "process-chunk"
    job_id: str = Field(..., min_length=1)
    sequence: int = Field(..., ge=1)
    generation: int = Field(default=0, ge=0)
    items: List[ChunkItem] = Field(..., min_length=1)
    config: ChunkConfig = Field(default_factory=ChunkConfig)
    cancel_requested: bool = Field(default=False, description="Cooperative stop flag")


def parse_chunk(raw: str) -> ChunkPayload:
    """Deserialize a queue payload.

    Raises:
        MalformedChunkError: If the payload is not a valid chunk message
    """
    try:
        return ChunkPayload.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedChunkError(str(e)) from e


class QueueEntry(BaseModel):
    """Row of the chunk queue, with the payload parsed when possible."""

    id: str
    job_id: Optional[str] = None
    state: QueueState
    priority: int = 0
    worker_id: Optional[str] = None
    attempts: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    last_error: Optional[str] = None
    raw: str = ""
    chunk: Optional[ChunkPayload] = None
    parse_error: Optional[str] = None

    @property
    def is_malformed(self) -> bool:
        return self.chunk is None


class ProgressEvent(BaseModel):
    """Transient progress update pushed to subscribers."""

    job_id: str
    status: JobStatus
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    current_item: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_progress(
        cls,
        job_id: str,
        status: JobStatus,
        progress: JobProgress,
        current_item: Optional[str] = None,
        error: Optional[str] = None,
    ) -> "ProgressEvent":
        return cls(
            job_id=job_id,
            status=status,
            total=progress.total,
            completed=progress.processed,
            failed=progress.failed,
            pending=progress.pending,
            current_item=current_item,
            error=error,
        )
