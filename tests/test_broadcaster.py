"""Tests for the in-process progress broadcaster."""

import threading
from collections import OrderedDict

import pytest

from chunkflow.broadcaster import ProgressBroadcaster
from chunkflow.errors import SubscriberLimitError
from chunkflow.queue.models import JobStatus, ProgressEvent


def _event(completed, status=JobStatus.PROCESSING, job_id="job-1"):
    return ProgressEvent(job_id=job_id, status=status, total=10, completed=completed)


class TestProgressBroadcaster:
    def test_publish_to_subscriber(self):
        """Subscribers receive events for their job only."""
        hub = ProgressBroadcaster()
        sub = hub.subscribe("job-1")
        other = hub.subscribe("job-2")

        hub.publish("job-1", _event(1))

        assert sub.get(timeout=1).completed == 1
        assert other.get(timeout=0.1) is None

    def test_publish_without_subscribers(self):
        """Publishing with nobody listening just records the latest event."""
        hub = ProgressBroadcaster()
        hub.publish("job-1", _event(3))
        assert hub.latest("job-1").completed == 3

    def test_replay_latest_on_subscribe(self):
        """New subscribers get the latest event first unless replay is off."""
        hub = ProgressBroadcaster()
        hub.publish("job-1", _event(5))

        assert hub.subscribe("job-1").get(timeout=1).completed == 5
        assert hub.subscribe("job-1", replay=False).get(timeout=0.1) is None

    def test_slow_subscriber_drops_oldest(self):
        """A full buffer never blocks the publisher; oldest events go first."""
        hub = ProgressBroadcaster(buffer_size=3)
        sub = hub.subscribe("job-1")

        done = threading.Event()

        def publish_many():
            for i in range(1, 11):
                hub.publish("job-1", _event(i))
            done.set()

        t = threading.Thread(target=publish_many)
        t.start()
        assert done.wait(timeout=2)
        t.join()

        received = [sub.get(timeout=0.5).completed for _ in range(3)]
        assert received == [8, 9, 10]
        assert sub.dropped == 7

    def test_terminal_event_closes_subscription(self):
        """Iteration ends after the terminal event."""
        hub = ProgressBroadcaster()
        sub = hub.subscribe("job-1")
        hub.publish("job-1", _event(4))
        hub.publish("job-1", _event(10, status=JobStatus.COMPLETED))

        events = list(sub)
        assert [e.completed for e in events] == [4, 10]
        assert sub.closed
        assert hub.subscriber_count("job-1") == 0

    def test_stopped_is_not_terminal(self):
        """A stopped job keeps its subscribers."""
        hub = ProgressBroadcaster()
        sub = hub.subscribe("job-1")
        hub.publish("job-1", _event(4, status=JobStatus.STOPPED))

        assert sub.get(timeout=1).status == JobStatus.STOPPED
        assert not sub.closed

    def test_subscriber_limit(self):
        """Subscriptions past the per-job limit are refused."""
        hub = ProgressBroadcaster(max_subscribers_per_job=2)
        hub.subscribe("job-1")
        hub.subscribe("job-1")

        with pytest.raises(SubscriberLimitError):
            hub.subscribe("job-1")
        hub.subscribe("job-2")

    def test_close_frees_slot(self):
        """Closing a subscription releases its slot."""
        hub = ProgressBroadcaster(max_subscribers_per_job=1)
        with hub.subscribe("job-1"):
            assert hub.subscriber_count("job-1") == 1
        assert hub.subscriber_count("job-1") == 0
        hub.subscribe("job-1")

    def test_shutdown_closes_everything(self):
        """Shutdown ends every stream and ignores later publishes."""
        hub = ProgressBroadcaster()
        sub = hub.subscribe("job-1")
        hub.shutdown()

        assert sub.closed
        assert sub.get(timeout=0.1) is None
        hub.publish("job-1", _event(1))
        assert hub.latest("job-1") is None
        assert hub.subscribe("job-1").closed

    def test_forget(self):
        """Forgetting a job drops its state and closes its subscribers."""
        hub = ProgressBroadcaster()
        hub.publish("job-1", _event(2))
        sub = hub.subscribe("job-1", replay=False)

        hub.forget("job-1")
        assert hub.latest("job-1") is None
        assert sub.get(timeout=0.1) is None

    def test_replay_precedes_concurrent_publish(self):
        """A publish racing a new subscription arrives after the replayed snapshot."""
        hub = ProgressBroadcaster()
        hub.publish("job-1", _event(1))

        class PublishOnRead(OrderedDict):
            thread = None

            def get(self, key, default=None):
                if self.thread is None:
                    self.thread = threading.Thread(target=hub.publish, args=(key, _event(5)))
                    self.thread.start()
                    self.thread.join(timeout=0.2)
                return super().get(key, default)

        hub._latest = PublishOnRead(hub._latest)
        sub = hub.subscribe("job-1")
        hub._latest.thread.join(timeout=2)

        received = [sub.get(timeout=1).completed, sub.get(timeout=1).completed]
        assert received == [1, 5]

    def test_concurrent_subscribers_see_ordered_events(self):
        """Every subscriber sees non-decreasing progress while publishes race."""
        hub = ProgressBroadcaster(buffer_size=1000)
        hub.publish("job-1", _event(0))
        subs = []

        def publish_many():
            for i in range(1, 200):
                hub.publish("job-1", _event(i))

        t = threading.Thread(target=publish_many)
        t.start()
        for _ in range(5):
            subs.append(hub.subscribe("job-1"))
        t.join()

        for sub in subs:
            seen = []
            event = sub.get(timeout=0.1)
            while event is not None:
                seen.append(event.completed)
                event = sub.get(timeout=0.1)
            assert seen == sorted(seen)
            assert seen[-1] == 199

    def test_retained_events_capped(self):
        """Only the most recently published jobs keep a replayable event."""
        hub = ProgressBroadcaster(max_retained_jobs=2)
        hub.publish("job-1", _event(1, job_id="job-1"))
        hub.publish("job-2", _event(2, job_id="job-2"))
        hub.publish("job-1", _event(3, job_id="job-1"))
        hub.publish("job-3", _event(4, job_id="job-3"))

        assert hub.latest("job-2") is None
        assert hub.latest("job-1").completed == 3
        assert hub.latest("job-3").completed == 4
