"""In-process pub/sub of job progress events.

Publishers never block: every subscriber owns a bounded buffer and, when it
is full, the oldest buffered event is dropped. Consumers treat the latest
event as ground truth, so losing intermediate events is harmless.
"""

import logging
import queue
import threading
from collections import OrderedDict, defaultdict
from typing import Dict, Iterator, List, Optional

from .errors import SubscriberLimitError
from .queue.models import ProgressEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer's view of a job's event stream.

    Iterating yields events until the subscription closes. A subscription
    closes when the consumer calls ``close()``, after a terminal event is
    delivered, or when the broadcaster shuts down.
    """

    def __init__(self, hub: "ProgressBroadcaster", job_id: str, buffer_size: int):
        self.job_id = job_id
        self._hub = hub
        self._buffer: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: ProgressEvent) -> None:
        """Buffer an event, dropping the oldest when full. Never blocks."""
        while True:
            try:
                self._buffer.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._buffer.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next buffered event, or None on timeout or once closed and drained.

        A delivered terminal event closes the subscription.
        """
        poll = 0.1
        waited = 0.0
        while True:
            try:
                event = self._buffer.get(timeout=poll)
            except queue.Empty:
                if self.closed:
                    return None
                waited += poll
                if timeout is not None and waited >= timeout:
                    return None
                continue
            if event.is_terminal:
                self.close()
            return event

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._hub._unregister(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args) -> None:
        self.close()


class ProgressBroadcaster:
    """Progress hub keyed by job id.

    Delivery happens under the registry lock, so every subscriber sees
    events in publish order, replayed snapshot first.

    Args:
        max_subscribers_per_job: Concurrent subscriptions allowed per job
        buffer_size: Events buffered per subscriber before dropping the oldest
        max_retained_jobs: Jobs whose latest event is kept for replay; the
            least recently published job is evicted first
    """

    def __init__(
        self,
        max_subscribers_per_job: int = 100,
        buffer_size: int = 256,
        max_retained_jobs: int = 1024,
    ):
        self.max_subscribers_per_job = max_subscribers_per_job
        self.buffer_size = buffer_size
        self.max_retained_jobs = max_retained_jobs
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._latest: "OrderedDict[str, ProgressEvent]" = OrderedDict()
        self._shutdown = False

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._latest[job_id] = event
            self._latest.move_to_end(job_id)
            while len(self._latest) > self.max_retained_jobs:
                evicted, _ = self._latest.popitem(last=False)
                logger.debug("Evicted retained event of job %s", evicted)
            subscribers = list(self._subscribers.get(job_id, ()))
            for sub in subscribers:
                sub._offer(event)

        if event.is_terminal:
            logger.debug("Terminal event for job %s delivered to %d subscribers",
                         job_id, len(subscribers))

    def subscribe(self, job_id: str, replay: bool = True) -> Subscription:
        """Register a subscriber.

        Args:
            job_id: Job to follow
            replay: Deliver the latest known event first

        Raises:
            SubscriberLimitError: If the job already has the maximum subscribers
        """
        with self._lock:
            subs = self._subscribers[job_id]
            if len(subs) >= self.max_subscribers_per_job:
                raise SubscriberLimitError(job_id, self.max_subscribers_per_job)
            sub = Subscription(self, job_id, self.buffer_size)
            if self._shutdown:
                sub._closed.set()
                return sub
            subs.append(sub)
            latest = self._latest.get(job_id)
            if replay and latest is not None:
                sub._offer(latest)
        return sub

    def latest(self, job_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(job_id)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def forget(self, job_id: str) -> None:
        """Drop remembered state and close subscribers of a deleted job."""
        with self._lock:
            self._latest.pop(job_id, None)
            subs = self._subscribers.pop(job_id, [])
        for sub in subs:
            sub._closed.set()

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            subs = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        for sub in subs:
            sub._closed.set()
        logger.debug("Broadcaster shut down, closed %d subscriptions", len(subs))

    def _unregister(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.job_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.job_id]
