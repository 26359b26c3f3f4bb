"""Split a job's items into fixed-size, sequenced chunks."""

from typing import List, Sequence, TypeVar

from .models import ChunkConfig, ChunkItem, ChunkPayload, WorkItem

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 500


def partition(items: Sequence[T], chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[List[T]]:
    """Partition items into ceil(N / chunk_size) consecutive batches.

    Input order is preserved and the remainder goes in the last batch.

    Raises:
        ValueError: If chunk_size is not positive
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [list(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]


def build_chunks(
    job_id: str,
    items: Sequence[WorkItem],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    config: ChunkConfig = None,
    generation: int = 0,
) -> List[ChunkPayload]:
    """Package work items as chunk messages sequenced 1..k."""
    config = config or ChunkConfig()
    return [
        ChunkPayload(
            job_id=job_id,
            sequence=sequence,
            generation=generation,
            items=[ChunkItem(id=item.id, payload=item.payload) for item in batch],
            config=config,
        )
        for sequence, batch in enumerate(partition(items, chunk_size), start=1)
    ]
