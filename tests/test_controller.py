"""Tests for the job lifecycle state machine."""

import csv
from pathlib import Path

import pytest

from chunkflow.errors import EngineInternalError, InvalidJobStateError, JobNotFoundError
from chunkflow.queue.models import ItemStatus, JobStatus, QueueState


def _urls(n):
    return [f"https://company{i}.com" for i in range(n)]


class TestCreateAndStart:
    def test_create_job_pending(self, controller):
        """New jobs are pending with one item per payload."""
        job = controller.create_job(_urls(3), file_name="leads.csv")
        snapshot = controller.get_status(job.id)

        assert snapshot.job.status == JobStatus.PENDING
        assert snapshot.job.total_items == 3
        assert snapshot.progress.pending == 3

    def test_start_enqueues_chunks(self, engine, controller):
        """Start moves to processing and enqueues ceil(N/C) chunks."""
        controller.chunk_size = 2
        job = controller.create_job(_urls(5))
        started = controller.start(job.id)

        assert started.status == JobStatus.PROCESSING
        assert started.generation == 1
        entries = engine.queue.list_entries(job_id=job.id)
        assert [len(e.chunk.items) for e in entries] == [2, 2, 1]
        assert all(e.chunk.generation == 1 for e in entries)

    def test_start_twice_rejected(self, controller):
        """Only pending jobs can start."""
        job = controller.create_job(_urls(1))
        controller.start(job.id)

        with pytest.raises(InvalidJobStateError) as exc_info:
            controller.start(job.id)
        assert exc_info.value.status == "processing"
        assert exc_info.value.operation == "start"

    def test_start_empty_job_completes(self, controller):
        """A job with no items completes immediately."""
        job = controller.create_job([])
        assert controller.start(job.id).status == JobStatus.COMPLETED

    def test_unknown_job(self, controller):
        """Operations on unknown jobs raise JobNotFoundError."""
        for op in (controller.start, controller.stop, controller.resume,
                   controller.retry_failed, controller.delete, controller.get_status):
            with pytest.raises(JobNotFoundError):
                op("missing")

    def test_internal_errors_wrapped(self, controller, monkeypatch):
        """Unexpected failures surface as EngineInternalError."""
        job = controller.create_job(_urls(1))

        def broken(*args, **kwargs):
            raise RuntimeError("database exploded")

        monkeypatch.setattr(controller.store, "list_items", broken)
        with pytest.raises(EngineInternalError, match="database exploded"):
            controller.start(job.id)


class TestStop:
    def test_stop_removes_queued_chunks(self, engine, controller):
        """Stop removes every pending chunk of the job."""
        controller.chunk_size = 2
        job = controller.create_job(_urls(6))
        controller.start(job.id)

        assert controller.stop(job.id) is True
        assert controller.get_status(job.id).job.status == JobStatus.STOPPED
        assert engine.queue.list_entries(job_id=job.id) == []
        assert job.id in engine.janitor.scheduled_jobs()

    def test_stop_flags_active_chunk(self, engine, controller):
        """A leased chunk is flagged instead of removed."""
        job = controller.create_job(_urls(3))
        controller.start(job.id)
        entry = engine.queue.dequeue("worker-1")

        controller.stop(job.id)

        current = engine.queue.get_entry(entry.id)
        assert current.state == QueueState.ACTIVE
        assert current.chunk.cancel_requested is True

    def test_double_stop_rejected_counts_untouched(self, engine, controller):
        """Stopping a stopped job raises and leaves counts as they were."""
        controller.chunk_size = 2
        job = controller.create_job(_urls(4))
        controller.start(job.id)
        engine.pool.run_once()
        controller.stop(job.id)
        before = controller.get_status(job.id).job

        with pytest.raises(InvalidJobStateError):
            controller.stop(job.id)

        after = controller.get_status(job.id).job
        assert after.status == JobStatus.STOPPED
        assert (after.processed_count, after.failed_count) == (before.processed_count, before.failed_count)
        assert after.processed_count == 2

    def test_stop_pending_rejected(self, controller):
        """Pending jobs cannot be stopped."""
        job = controller.create_job(_urls(1))
        with pytest.raises(InvalidJobStateError):
            controller.stop(job.id)


class TestResume:
    def test_resume_reruns_unfinished_only(self, engine, controller, generator):
        """Completed items are not reprocessed or recounted."""
        controller.chunk_size = 2
        job = controller.create_job(_urls(6))
        controller.start(job.id)
        engine.pool.run_once()
        controller.stop(job.id)
        generator.calls.clear()

        assert controller.resume(job.id) is True
        resumed = controller.get_status(job.id).job
        assert resumed.status == JobStatus.PROCESSING
        assert resumed.generation == 2
        assert resumed.processed_count == 2

        engine.pool.run_until_idle()
        assert sorted(generator.calls) == sorted(_urls(6)[2:])
        final = controller.get_status(job.id).job
        assert final.status == JobStatus.COMPLETED
        assert final.processed_count == 6

    def test_resume_reruns_failed_items(self, engine, controller, generator):
        """Items that failed before the stop get another try."""
        urls = _urls(4)
        generator.permanent.add(urls[0])
        controller.chunk_size = 2
        job = controller.create_job(urls)
        controller.start(job.id)
        engine.pool.run_once()
        controller.stop(job.id)
        assert controller.get_status(job.id).job.failed_count == 1

        generator.permanent.clear()
        controller.resume(job.id)
        assert controller.get_status(job.id).job.failed_count == 0
        engine.pool.run_until_idle()

        final = controller.get_status(job.id).job
        assert (final.status, final.processed_count, final.failed_count) == (JobStatus.COMPLETED, 4, 0)

    def test_resume_nothing_left_completes(self, engine, controller):
        """A stopped job with every item done resumes straight to completed."""
        job = controller.create_job(_urls(2))
        controller.start(job.id)
        engine.pool.run_once()
        engine.store.update_job_status(job.id, JobStatus.STOPPED)

        controller.resume(job.id)
        assert controller.get_status(job.id).job.status == JobStatus.COMPLETED

    def test_resume_requires_stopped(self, controller):
        """Only stopped jobs resume."""
        job = controller.create_job(_urls(1))
        with pytest.raises(InvalidJobStateError):
            controller.resume(job.id)


class TestRetryFailed:
    def test_retry_completed_job(self, engine, controller, generator):
        """Retrying reopens a completed job for its failed items only."""
        urls = _urls(3)
        generator.permanent.add(urls[1])
        job = controller.create_job(urls)
        controller.start(job.id)
        engine.pool.run_until_idle()
        assert controller.get_status(job.id).job.failed_count == 1

        generator.permanent.clear()
        generator.calls.clear()
        assert controller.retry_failed(job.id) == 1
        reopened = controller.get_status(job.id).job
        assert reopened.status == JobStatus.PROCESSING
        assert (reopened.processed_count, reopened.failed_count) == (2, 0)

        engine.pool.run_until_idle()
        assert generator.calls == [urls[1]]
        final = controller.get_status(job.id).job
        assert (final.status, final.processed_count, final.failed_count) == (JobStatus.COMPLETED, 3, 0)

    def test_retry_subset(self, engine, controller, generator):
        """Only the requested failed items are reset."""
        urls = _urls(3)
        generator.permanent.update(urls)
        job = controller.create_job(urls)
        controller.start(job.id)
        engine.pool.run_until_idle()

        failed = engine.store.list_items(job.id, ItemStatus.FAILED)
        assert controller.retry_failed(job.id, [failed[0].id, "not-an-item"]) == 1
        assert len(engine.store.list_items(job.id, ItemStatus.FAILED)) == 2

    def test_retry_nothing_failed(self, engine, controller):
        """No failed items means nothing to do."""
        job = controller.create_job(_urls(2))
        controller.start(job.id)
        engine.pool.run_until_idle()

        assert controller.retry_failed(job.id) == 0
        assert controller.get_status(job.id).job.status == JobStatus.COMPLETED

    def test_retry_while_processing_rejected(self, controller):
        """Retry waits for the current run to finish."""
        job = controller.create_job(_urls(1))
        controller.start(job.id)
        with pytest.raises(InvalidJobStateError):
            controller.retry_failed(job.id)


class TestDeleteAndExport:
    def test_delete_removes_everything(self, engine, controller, temp_dir):
        """Delete removes the job, its items, its queue entries and its artifact."""
        artifact = temp_dir / "upload.csv"
        artifact.write_text("url\nhttps://a.com\n")
        job = controller.create_job(_urls(2), artifact_path=str(artifact))
        controller.start(job.id)
        controller.stop(job.id)

        assert controller.delete(job.id) is True
        assert engine.store.get_job(job.id) is None
        assert engine.queue.list_entries(job_id=job.id) == []
        assert not artifact.exists()
        with pytest.raises(JobNotFoundError):
            controller.get_status(job.id)

    def test_delete_processing_rejected(self, controller):
        """Running jobs must be stopped before deletion."""
        job = controller.create_job(_urls(1))
        controller.start(job.id)
        with pytest.raises(InvalidJobStateError):
            controller.delete(job.id)

    def test_export_results(self, engine, controller, generator, temp_dir):
        """Export writes one row per item in input order."""
        urls = _urls(3)
        generator.permanent.add(urls[2])
        job = controller.create_job(urls)
        controller.start(job.id)
        engine.pool.run_until_idle()

        out = controller.export_results(job.id, str(temp_dir / "out.csv"))
        with open(out, newline="") as f:
            rows = list(csv.DictReader(f))

        assert [r["payload"] for r in rows] == urls
        assert [r["status"] for r in rows] == ["completed", "completed", "failed"]
        assert rows[0]["result"] == f"opener for {urls[0]}"
        assert "invalid api key" in rows[2]["error"]

    def test_export_default_path(self, engine, controller):
        """Without a path, results land in the artifact directory."""
        job = controller.create_job(_urls(1))
        out = controller.export_results(job.id)
        assert out == Path(engine.config.database.artifact_dir) / f"{job.id}-results.csv"
        assert out.exists()
