"""
Live progress channel.

Observers subscribe and receive every event published while they are
subscribed; there is no backlog. Each subscriber owns a bounded queue, so a
slow observer loses events instead of stalling the publishers.
"""
from __future__ import annotations
import logging
import queue
import threading
from typing import Iterator, Optional

from .models import utcnow

logger = logging.getLogger("packager.broadcast")


class Subscription:
    def __init__(self, broadcaster: "ProgressBroadcaster", job_id: Optional[str], maxsize: int):
        self._broadcaster = broadcaster
        self.job_id = job_id
        self.queue: queue.Queue[dict] = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, event: dict) -> bool:
        return self.job_id is None or event.get("job_id") == self.job_id

    def get(self, timeout: Optional[float] = None) -> Optional[dict]:
        """Next event, or None when nothing arrived within `timeout`."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events

    def __iter__(self) -> Iterator[dict]:
        while not self.closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ProgressBroadcaster:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self, job_id, self.queue_size)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
        sub.closed = True

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, **payload) -> dict:
        event = {"type": event_type, **payload, "timestamp": utcnow().isoformat()}
        with self._lock:
            targets = [s for s in self._subscribers if s.wants(event)]
        for sub in targets:
            try:
                sub.queue.put_nowait(event)
            except queue.Full:
                sub.dropped += 1
                logger.debug(f"Subscriber queue full, dropped {event_type}")
        return event

    def close_all(self) -> None:
        with self._lock:
            subs, self._subscribers = self._subscribers, []
        for sub in subs:
            sub.closed = True
