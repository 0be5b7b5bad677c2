"""
Work queue feeding the reconciliation workers.

Keys are resource identities. The queue guarantees:

- a key waiting in the queue is held once, however often it is added;
- a key is handed to at most one worker at a time; adding it while it is
  being processed queues it again once the worker calls done();
- delayed adds wait in a timer heap, keeping only the earliest deadline per key.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Deque, Dict, Hashable, List, Optional, Set, Tuple


class WorkQueue:
    """Deduplicating, per-key serialized work queue with delayed requeue"""

    def __init__(self):
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._waiting_at: Dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False
        self._delay_thread = threading.Thread(
            target=self._delay_loop, name="workqueue-delay", daemon=True
        )
        self._delay_thread.start()

    def _add_locked(self, key: Hashable):
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify_all()

    def add(self, key: Hashable):
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float):
        """Add the key once `delay` seconds have passed"""
        if delay <= 0:
            self.add(key)
            return
        ready_at = time.monotonic() + delay
        with self._cond:
            if self._shutting_down:
                return
            current = self._waiting_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """
        Block until a key is available

        Returns:
            The next key, or None once the queue is shut down (or on timeout)
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: Hashable):
        """Mark the key's pass finished; re-queue it if it was added meanwhile"""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify_all()

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        self._delay_thread.join(timeout=1)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def pending(self) -> List[Hashable]:
        """Keys still queued or in flight; used to log what is left at shutdown"""
        with self._cond:
            return list(self._queue) + list(self._processing)

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def _delay_loop(self):
        with self._cond:
            while not self._shutting_down:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._waiting)
                    if self._waiting_at.get(key) != ready_at:
                        continue
                    del self._waiting_at[key]
                    self._add_locked(key)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout)


class ExponentialBackoff:
    """Per-key exponential backoff: base * 2^failures, capped"""

    def __init__(self, base: float, cap: float):
        self.base = base
        self.cap = cap
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def next_delay(self, key: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.base * (2 ** min(failures, 32)), self.cap)

    def failures(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable):
        with self._lock:
            self._failures.pop(key, None)
