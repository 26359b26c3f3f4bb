"""Item store, chunk queue and partitioning for resumable job processing.

The worker pool lives in chunkflow.queue.worker; it depends on the
broadcaster and generators, so it is not imported here.
"""

from .backends import ChunkQueue, ItemStore
from .models import (
    ChunkConfig,
    ChunkItem,
    ChunkPayload,
    ItemStatus,
    Job,
    JobProgress,
    JobStatus,
    ProgressEvent,
    QueueEntry,
    QueueState,
    WorkItem,
    parse_chunk,
)
from .partitioner import DEFAULT_CHUNK_SIZE, build_chunks, partition
from .sqlite_backend import SQLiteChunkQueue, SQLiteDatabase, SQLiteItemStore

__all__ = [
    "ChunkQueue",
    "ItemStore",
    "ChunkConfig",
    "ChunkItem",
    "ChunkPayload",
    "ItemStatus",
    "Job",
    "JobProgress",
    "JobStatus",
    "ProgressEvent",
    "QueueEntry",
    "QueueState",
    "WorkItem",
    "parse_chunk",
    "DEFAULT_CHUNK_SIZE",
    "build_chunks",
    "partition",
    "SQLiteChunkQueue",
    "SQLiteDatabase",
    "SQLiteItemStore",
]
