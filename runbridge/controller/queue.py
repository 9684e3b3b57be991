"""Keyed work queue for reconcile requests.

Guarantees that a key is handed to at most one worker at a time: a key added
while it is being processed is marked dirty and queued again once the worker
calls ``done``.  Keys already waiting in the queue are not duplicated, so a
burst of notifications for one record collapses into a single reconcile.

Failed keys are re-added with per-key exponential backoff.  Ephemeral --
empty on process restart; the watch re-lists every record anyway.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING

from loguru import logger

from runbridge.controller.errors import ShuttingDownError

if TYPE_CHECKING:
    from runbridge.controller.models.resources import NamespacedName


class WorkQueue:
    """Deduplicating, key-exclusive queue with rate-limited re-adds.

    Must be used from a single event loop.  Provides a drain mechanism for
    graceful shutdown: ``wait_until_drained`` blocks until no key is being
    processed.
    """

    def __init__(self, *, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._queue: deque[NamespacedName] = deque()
        self._queued: set[NamespacedName] = set()
        self._processing: set[NamespacedName] = set()
        self._dirty: set[NamespacedName] = set()
        self._failures: dict[NamespacedName, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()

        self._ready = asyncio.Event()
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (nothing in flight).
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def add(self, key: NamespacedName) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: NamespacedName, delay: float) -> None:
        """Add *key* once *delay* seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, _fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: NamespacedName) -> float:
        """Re-add a failed key after its backoff delay.  Returns the delay used."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: NamespacedName) -> None:
        """Reset the failure count of *key*."""
        self._failures.pop(key, None)

    def failures(self, key: NamespacedName) -> int:
        return self._failures.get(key, 0)

    # -- Consumption -----------------------------------------------------------

    async def get(self) -> NamespacedName:
        """Wait for the next key and mark it as processing.

        Raises ``ShuttingDownError`` once ``shut_down`` has been called.
        """
        while True:
            if self._shutting_down:
                raise ShuttingDownError
            if self._queue:
                key = self._queue.popleft()
                self._queued.discard(key)
                if not self._queue:
                    self._ready.clear()
                self._processing.add(key)
                self._drain_event.clear()
                return key
            self._ready.clear()
            await self._ready.wait()

    def done(self, key: NamespacedName) -> None:
        """Mark *key* as no longer processing; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)
        if not self._processing:
            self._drain_event.set()

    # -- Query -----------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    # -- Lifecycle -------------------------------------------------------------

    def shut_down(self) -> None:
        """Refuse new keys, cancel pending delayed adds and wake all waiters."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._queue.clear()
        self._queued.clear()
        self._dirty.clear()
        self._ready.set()
        logger.info("WorkQueue: shutdown initiated ({} keys in flight)", len(self._processing))

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no key is being processed.

        Returns ``True`` if drained, ``False`` if *timeout* expired first.
        """
        if not self._processing:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "WorkQueue: drain timed out after {}s with {} keys still processing",
                timeout,
                len(self._processing),
            )
            return False
        else:
            return True
