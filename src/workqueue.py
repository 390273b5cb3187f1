"""
Work Queue - coalescing per-key queue for the reconcile workers.

Modelled on the Kubernetes client work queue: a key added several times
before a worker picks it up is processed once, a key is never handed to two
workers at the same time, and a key added while it is being processed is
queued again once the worker calls done().
"""

import asyncio
from collections import deque
from typing import Deque, Dict, Generic, Hashable, Optional, Set, TypeVar

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """Coalescing work queue with delayed adds."""

    def __init__(self):
        self._queue: Deque[K] = deque()
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        self._timers: Dict[K, asyncio.TimerHandle] = {}
        self._timer_deadlines: Dict[K, float] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """Mark a key as needing work."""
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done()
            return

        self._queue.append(key)
        self._notify()

    def add_after(self, key: K, delay: float) -> None:
        """
        Add a key once delay seconds have passed.

        Only the earliest pending timer per key is kept; a later request for
        a key that already has a sooner timer is ignored.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timer_deadlines.get(key)
        if existing is not None and existing <= deadline:
            return

        self._cancel_timer(key)
        self._timer_deadlines[key] = deadline
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    async def get(self) -> Optional[K]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down
        """
        while not self._queue and not self._shutting_down:
            self._wakeup.clear()
            await self._wakeup.wait()
        if self._shutting_down:
            return None

        key = self._queue.popleft()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        """Mark a key as no longer processing, re-queueing it if it was re-added."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._notify()

    def forget(self, key: K) -> None:
        """Drop any pending work and timer for a key."""
        self._cancel_timer(key)
        if key in self._dirty:
            self._dirty.discard(key)
            if key in self._queue:
                self._queue.remove(key)

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    def has_timer(self, key: K) -> bool:
        return key in self._timers

    def shutdown(self) -> None:
        """Stop handing out keys and cancel all timers."""
        self._shutting_down = True
        for key in list(self._timers):
            self._cancel_timer(key)
        self._notify()

    def _fire_timer(self, key: K) -> None:
        self._timers.pop(key, None)
        self._timer_deadlines.pop(key, None)
        self.add(key)

    def _cancel_timer(self, key: K) -> None:
        handle = self._timers.pop(key, None)
        self._timer_deadlines.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _notify(self) -> None:
        self._wakeup.set()
