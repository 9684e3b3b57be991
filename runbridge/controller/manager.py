"""Controller manager -- the scheduler that drives reconcilers.

The manager owns one ``WorkQueue`` per registered kind and two kinds of
background tasks:

- **pumps**: one per registered watch source, feeding changed keys into the
  queue.  A failing source is restarted after ``SOURCE_RESTART_DELAY``.
- **workers**: ``max_workers`` tasks that take a key, call the registered
  handler and act on the returned ``ReconcileOutcome``.

Backoff for failed keys lives here (in the queues), never in the reconciler.
Each kind runs its own ``max_workers`` workers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from runbridge.controller.errors import ShuttingDownError
from runbridge.controller.queue import WorkQueue

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from runbridge.controller.models.resources import NamespacedName
    from runbridge.controller.reconcile.reconciler import ReconcileOutcome
    from runbridge.controller.store.base import WatchSource

    Handler = Callable[[NamespacedName], Awaitable[ReconcileOutcome]]

SOURCE_RESTART_DELAY = 5.0


@dataclass
class _Registration:
    kind: str
    handler: Handler
    source: WatchSource
    queue: WorkQueue


class ControllerManager:
    """Runs registered reconcilers on a bounded worker pool."""

    def __init__(
        self,
        *,
        max_workers: int = 4,
        backoff_base_delay: float = 0.005,
        backoff_max_delay: float = 1000.0,
    ) -> None:
        self._max_workers = max_workers
        self._base_delay = backoff_base_delay
        self._max_delay = backoff_max_delay
        self._registrations: list[_Registration] = []
        self._tasks: list[asyncio.Task] = []
        self._started = False

    # -- Registration ----------------------------------------------------------

    def watch(self, kind: str, handler: Handler, *, source: WatchSource) -> WorkQueue:
        """Register *handler* for keys of *kind* produced by *source*.

        Returns the queue for that kind, so callers can enqueue keys directly.
        """
        if self._started:
            msg = "Cannot register watches after the manager has started"
            raise RuntimeError(msg)
        queue = WorkQueue(base_delay=self._base_delay, max_delay=self._max_delay)
        self._registrations.append(_Registration(kind=kind, handler=handler, source=source, queue=queue))
        logger.info("Manager: watching {}", kind)
        return queue

    def queue_for(self, kind: str) -> WorkQueue:
        for registration in self._registrations:
            if registration.kind == kind:
                return registration.queue
        raise LookupError(kind)

    @property
    def kinds(self) -> list[str]:
        return [r.kind for r in self._registrations]

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Spawn pump and worker tasks on the running event loop."""
        if self._started:
            return
        self._started = True
        for registration in self._registrations:
            self._tasks.append(asyncio.create_task(self._pump(registration), name=f"pump:{registration.kind}"))
            for index in range(self._max_workers):
                self._tasks.append(
                    asyncio.create_task(self._worker(registration), name=f"worker:{registration.kind}:{index}")
                )
        logger.info("Manager: started {} kinds with {} workers each", len(self._registrations), self._max_workers)

    @property
    def is_running(self) -> bool:
        return self._started and any(not task.done() for task in self._tasks)

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop accepting keys, wait for in-flight reconciles, then cancel all tasks.

        Returns ``True`` if every in-flight reconcile finished within *timeout*.
        """
        for registration in self._registrations:
            registration.queue.shut_down()

        drained = True
        for registration in self._registrations:
            drained = await registration.queue.wait_until_drained(timeout=timeout) and drained

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Manager: stopped (drained={})", drained)
        return drained

    # -- Tasks -----------------------------------------------------------------

    async def _pump(self, registration: _Registration) -> None:
        queue = registration.queue
        while not queue.is_shutting_down:
            try:
                async for key in registration.source.watch_records():
                    queue.add(key)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Manager: watch for {} failed, restarting", registration.kind)
            await asyncio.sleep(SOURCE_RESTART_DELAY)

    async def _worker(self, registration: _Registration) -> None:
        queue = registration.queue
        while True:
            try:
                key = await queue.get()
            except ShuttingDownError:
                return
            try:
                await self._process(registration, key)
            finally:
                queue.done(key)

    async def _process(self, registration: _Registration, key: NamespacedName) -> None:
        queue = registration.queue
        try:
            outcome = await registration.handler(key)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Manager: reconcile {} {} raised", registration.kind, key)
            delay = queue.add_rate_limited(key)
            logger.debug("Manager: {} requeued in {:.3f}s", key, delay)
            return

        if outcome.error is not None and outcome.requeue:
            delay = queue.add_rate_limited(key)
            logger.debug("Manager: {} requeued in {:.3f}s after error", key, delay)
        elif outcome.error is not None:
            logger.error("Manager: dropping {} {} after fatal error: {}", registration.kind, key, outcome.error)
            queue.forget(key)
        elif outcome.requeue:
            queue.forget(key)
            queue.add(key)
        else:
            queue.forget(key)
