from __future__ import annotations

import heapq
import itertools
import random
import threading
import time
from collections import deque
from collections.abc import Callable

Key = tuple[str, str]


class WorkQueue:
    """De-duplicating work queue keyed by ``(namespace, name)``.

    Guarantees:

    * A key appears in the ready queue at most once, however many events
      arrive for it.
    * A key is handed to at most one worker at a time.  Re-adding a key
      while it is being processed marks it dirty; :meth:`done` puts it back.
    * :meth:`add_rate_limited` delays a key with per-key exponential backoff
      (``base * 2**(n-1)`` capped at ``max_delay``, jittered by
      ``0.5 + random()``) until :meth:`forget` resets it.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        monotonic: Callable[[], float] = time.monotonic,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._monotonic = monotonic
        self._jitter = jitter
        self._cond = threading.Condition()
        self._queue: deque[Key] = deque()
        self._dirty: set[Key] = set()
        self._processing: set[Key] = set()
        self._delayed: list[tuple[float, int, Key]] = []
        self._sequence = itertools.count()
        self._failures: dict[Key, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: Key) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Key) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Key, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return
            due_at = self._monotonic() + delay
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Key) -> float:
        """Requeue ``key`` after its backoff delay and return that delay in seconds."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay = min(self.max_delay, self.base_delay * float(2 ** (attempt - 1)))
        jittered = delay * (0.5 + self._jitter())
        self.add_after(key, jittered)
        return jittered

    def forget(self, key: Key) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Key) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> Key | None:
        """Block for the next key.  Returns None on timeout or shutdown."""
        deadline = None if timeout is None else self._monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                wait: float | None = next_due
                if deadline is not None:
                    remaining = deadline - self._monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, key: Key) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
