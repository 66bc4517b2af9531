# notifier.py
"""In-process broadcast of job status changes.

Every subscriber owns a bounded buffer. Publishing never blocks: when a
buffer is full its oldest event is discarded and the subscriber is told how
many events it missed on its next ``get``.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, List, Optional

from models import StatusEvent

logger = logging.getLogger(__name__)


class Lagged(Exception):
    """Raised by ``Subscription.get`` after events were dropped for it."""

    def __init__(self, missed: int) -> None:
        super().__init__(f"subscriber lagged behind, {missed} event(s) dropped")
        self.missed = missed


class Subscription:
    def __init__(self, notifier: "StatusNotifier", capacity: int) -> None:
        self._notifier = notifier
        self._events: Deque[StatusEvent] = deque()
        self._capacity = capacity
        self._missed = 0
        self._cond = threading.Condition()
        self.closed = False

    def _push(self, event: StatusEvent) -> None:
        with self._cond:
            if len(self._events) >= self._capacity:
                self._events.popleft()
                self._missed += 1
            self._events.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[StatusEvent]:
        """Next event, or ``None`` on timeout / after ``close``.

        Raises ``Lagged`` once (resetting the counter) if events were
        dropped since the previous call.
        """
        with self._cond:
            if self._missed:
                missed, self._missed = self._missed, 0
                raise Lagged(missed)
            if not self._events and not self.closed:
                self._cond.wait(timeout)
            if self._events:
                return self._events.popleft()
            return None

    def close(self) -> None:
        self._notifier.unsubscribe(self)
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class StatusNotifier:
    """Multi-producer, multi-consumer fan-out of ``StatusEvent``s."""

    def __init__(self, capacity: int = 64) -> None:
        self.capacity = capacity
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.capacity)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: StatusEvent) -> int:
        """Deliver ``event`` to current subscribers; returns how many got it."""
        with self._lock:
            targets = list(self._subscribers)
        for sub in targets:
            sub._push(event)
        logger.debug("Published job %s -> %s to %d subscriber(s)", event.id, event.status.value, len(targets))
        return len(targets)
