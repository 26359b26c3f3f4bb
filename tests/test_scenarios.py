"""End-to-end job scenarios through the engine."""

import pytest

from chunkflow.engine import Engine
from chunkflow.generators import StubGenerator
from chunkflow.queue.models import ItemStatus, JobStatus


def _urls(n):
    return [f"https://company{i}.com" for i in range(1, n + 1)]


class TestScenarios:
    def test_large_job_three_chunks(self, engine):
        """1,200 items at chunk size 500 run as 500/500/200 and complete."""
        job = engine.submit(_urls(1200))

        entries = engine.queue.list_entries(job_id=job.id)
        assert [len(e.chunk.items) for e in entries] == [500, 500, 200]

        assert engine.pool.run_until_idle() == 3
        final = engine.controller.get_status(job.id).job
        assert final.status == JobStatus.COMPLETED
        assert (final.processed_count, final.failed_count) == (1200, 0)

    def test_transient_failures_exhaust_retries(self, engine, generator):
        """Items 3, 6 and 9 always fail transiently: 7 processed, 3 failed."""
        urls = _urls(10)
        generator.transient.update({urls[2], urls[5], urls[8]})
        job = engine.submit(urls)

        engine.pool.run_until_idle()

        final = engine.controller.get_status(job.id).job
        assert final.status == JobStatus.COMPLETED
        assert (final.processed_count, final.failed_count) == (7, 3)
        for url in (urls[2], urls[5], urls[8]):
            assert generator.attempts_for(url) == 3
        failed = engine.store.list_items(job.id, ItemStatus.FAILED)
        assert all(item.retry_count == 3 and item.error for item in failed)

    def test_stop_mid_chunk_then_resume(self, engine, generator):
        """Stop during the 4th of 10 items, then resume the remaining 6."""
        urls = _urls(10)
        job = engine.submit(urls)

        def stop_on_fourth(payload):
            if payload == urls[3]:
                engine.controller.stop(job.id)

        generator.hook = stop_on_fourth
        engine.pool.run_once()
        generator.hook = None

        stopped = engine.controller.get_status(job.id).job
        assert stopped.status == JobStatus.STOPPED
        assert stopped.processed_count == 4
        assert engine.queue.list_entries(job_id=job.id, states=["pending", "active"]) == []

        engine.controller.resume(job.id)
        entries = engine.queue.list_pending()
        assert len(entries) == 1
        assert [i.payload for i in entries[0].chunk.items] == urls[4:]

        generator.calls.clear()
        engine.pool.run_until_idle()

        assert generator.calls == urls[4:]
        final = engine.controller.get_status(job.id).job
        assert final.status == JobStatus.COMPLETED
        assert (final.processed_count, final.failed_count) == (10, 0)

    def test_counts_never_exceed_total(self, engine, generator):
        """processed + failed stays within total across stop, resume and retry."""
        urls = _urls(12)
        generator.permanent.update(urls[::4])
        engine.controller.chunk_size = 5
        job = engine.submit(urls)

        def check():
            j = engine.controller.get_status(job.id).job
            assert j.processed_count + j.failed_count <= j.total_items

        engine.pool.run_once()
        check()
        engine.controller.stop(job.id)
        check()
        engine.controller.resume(job.id)
        check()
        engine.pool.run_until_idle()
        check()
        generator.permanent.clear()
        engine.controller.retry_failed(job.id)
        check()
        engine.pool.run_until_idle()

        final = engine.controller.get_status(job.id).job
        assert (final.status, final.processed_count, final.failed_count) == (JobStatus.COMPLETED, 12, 0)


class TestEngine:
    def test_background_run(self, test_config):
        """Started engine drains jobs with its own worker threads."""
        with Engine(test_config, generator=StubGenerator()) as engine:
            job = engine.submit(_urls(25))
            final = engine.wait_for_job(job.id, timeout=10)

        assert final.status == JobStatus.COMPLETED
        assert final.processed_count == 25

    def test_wait_for_job_timeout(self, engine):
        """Waiting on a job nobody processes times out."""
        job = engine.submit(_urls(1))
        with pytest.raises(TimeoutError):
            engine.wait_for_job(job.id, timeout=0.1)

    def test_submit_without_start(self, engine):
        """Jobs can be created without starting them."""
        job = engine.submit(_urls(2), start=False)
        assert job.status == JobStatus.PENDING
        assert engine.queue.list_entries(job_id=job.id) == []

    def test_start_recovers_abandoned_leases(self, test_config):
        """Leases left by a crashed process are returned to the queue."""
        config = test_config.model_copy(deep=True)
        config.workers.stale_lease_s = 0.001

        first = Engine(config, generator=StubGenerator())
        job = first.submit(_urls(3))
        first.queue.dequeue("crashed-worker")
        first.database.close()

        with Engine(config, generator=StubGenerator()) as engine:
            final = engine.wait_for_job(job.id, timeout=10)
        assert final.status == JobStatus.COMPLETED
