"""Tests for Pydantic models and validation."""

import pytest
from pydantic import ValidationError
from chunkflow.errors import MalformedChunkError
from chunkflow.models import (
    EngineConfig,
    GeneratorConfig,
    LoggingConfig,
    QueueConfig,
    RetryConfig,
)
from chunkflow.queue.models import (
    ChunkItem,
    ChunkPayload,
    Job,
    JobProgress,
    JobStatus,
    ProgressEvent,
    parse_chunk,
)


def test_queue_config_invalid_chunk_size():
    """Test that a non-positive chunk size raises ValidationError."""
    with pytest.raises(ValidationError) as exc_info:
        QueueConfig(chunk_size=0)
    assert "chunk_size" in str(exc_info.value)


def test_retry_config_requires_one_attempt():
    """Test that max_retries below 1 is rejected."""
    with pytest.raises(ValidationError):
        RetryConfig(max_retries=0)


def test_generator_config_invalid_backend():
    """Test that an unknown backend raises ValidationError."""
    with pytest.raises(ValidationError):
        GeneratorConfig(backend="magic")


def test_logging_level_normalized():
    """Test log levels are upper-cased and validated."""
    assert LoggingConfig(level="warning").level == "WARNING"
    with pytest.raises(ValidationError):
        LoggingConfig(level="chatty")


def test_engine_config_from_dict():
    """Test creating EngineConfig from dict."""
    data = {
        "queue": {"chunk_size": 20},
        "workers": {"count": 2},
        "retry": {"base_delay_s": 0.0},
    }
    config = EngineConfig.from_dict(data)
    assert config.queue.chunk_size == 20
    assert config.workers.count == 2
    assert config.retry.base_delay_s == 0.0
    assert config.broadcaster.buffer_size == 256


def test_merge_cli_overrides_returns_new_instance():
    """Test overrides don't mutate the original config."""
    config = EngineConfig()
    updated = config.merge_cli_overrides({"workers": 3})
    assert updated.workers.count == 3
    assert config.workers.count == 10


def test_job_progress_pct():
    """Test progress percentage counts completed and failed items."""
    job = Job(id="j", total_items=8, processed_count=3, failed_count=1)
    assert job.progress_pct == 50.0
    assert Job(id="empty").progress_pct == 0.0


def test_terminal_statuses():
    """Test only completed and failed are terminal."""
    assert JobStatus.COMPLETED.is_terminal
    assert JobStatus.FAILED.is_terminal
    assert not JobStatus.STOPPED.is_terminal
    assert not JobStatus.PROCESSING.is_terminal


def test_parse_chunk_valid():
    """Test a serialized chunk parses back."""
    chunk = ChunkPayload(job_id="j", sequence=2, items=[ChunkItem(id="i", payload="p")])
    parsed = parse_chunk(chunk.model_dump_json())
    assert parsed == chunk
    assert parsed.kind == "process-chunk"


@pytest.mark.parametrize("raw", [
    "not json",
    '{"kind": "other", "job_id": "j", "sequence": 1, "items": [{"id": "i", "payload": "p"}]}',
    '{"kind": "process-chunk", "job_id": "j", "sequence": 1, "items": []}',
    '{"kind": "process-chunk", "job_id": "j", "sequence": 0, "items": [{"id": "i", "payload": "p"}]}',
    '{"kind": "process-chunk", "job_id": "j", "sequence": 1, "items": [{"id": "i", "payload": "p"}], "extra": 1}',
])
def test_parse_chunk_malformed(raw):
    """Test payloads that aren't chunk messages raise MalformedChunkError."""
    with pytest.raises(MalformedChunkError):
        parse_chunk(raw)


def test_progress_event_from_progress():
    """Test events copy live counts."""
    progress = JobProgress(total=10, processed=4, failed=1, pending=5)
    event = ProgressEvent.from_progress("j", JobStatus.PROCESSING, progress, current_item="i")
    assert (event.total, event.completed, event.failed, event.pending) == (10, 4, 1, 5)
    assert event.current_item == "i"
    assert not event.is_terminal
