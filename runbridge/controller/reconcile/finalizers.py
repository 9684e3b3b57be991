"""Finalizer bookkeeping on PipelineRun records.

The finalizer marker is what keeps a deleted record around until its Tekton
PipelineRun has been cleaned up.  Adding and removing it are the only writes
the controller makes to a record, and both go through ``_persist``: on a
version conflict the record is re-fetched and the change re-applied, up to
``conflict_retries`` attempts, before the ``ConflictError`` is surfaced.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from runbridge.controller.errors import ConflictError, RecordNotFoundError
from runbridge.controller.models.resources import DEFAULT_FINALIZER

if TYPE_CHECKING:
    from collections.abc import Callable

    from runbridge.controller.models.resources import PipelineRun
    from runbridge.controller.store.base import RecordStore


def add_finalizer(record: PipelineRun, finalizer: str) -> bool:
    """Append *finalizer* unless already present.  Returns whether the record changed."""
    if finalizer in record.metadata.finalizers:
        return False
    record.metadata.finalizers.append(finalizer)
    return True


def remove_finalizer(record: PipelineRun, finalizer: str) -> bool:
    """Drop every occurrence of *finalizer*.  Returns whether the record changed."""
    if finalizer not in record.metadata.finalizers:
        return False
    record.metadata.finalizers = [f for f in record.metadata.finalizers if f != finalizer]
    return True


class FinalizerManager:
    """Adds and removes this controller's finalizer on PipelineRun records."""

    def __init__(
        self,
        store: RecordStore,
        finalizer: str = DEFAULT_FINALIZER,
        *,
        conflict_retries: int = 3,
        log=logger,
    ) -> None:
        self._store = store
        self.finalizer = finalizer
        self._conflict_retries = conflict_retries
        self._log = log

    def has(self, record: PipelineRun) -> bool:
        return self.finalizer in record.metadata.finalizers

    async def add(self, record: PipelineRun) -> PipelineRun | None:
        """Register the finalizer on an active record.

        Returns the stored record, or ``None`` if it disappeared meanwhile.
        A record that started deleting while we retried is returned unchanged.
        """

        def _mutate(candidate: PipelineRun) -> bool:
            if candidate.is_deleting:
                return False
            return add_finalizer(candidate, self.finalizer)

        return await self._persist(record, _mutate)

    async def remove(self, record: PipelineRun) -> PipelineRun | None:
        """Release the record.  Returns ``None`` if it was already gone."""
        return await self._persist(record, lambda candidate: remove_finalizer(candidate, self.finalizer))

    async def _persist(
        self,
        record: PipelineRun,
        mutate: Callable[[PipelineRun], bool],
    ) -> PipelineRun | None:
        current = record
        attempt = 1
        while True:
            candidate = current.model_copy(deep=True)
            if not mutate(candidate):
                return current
            try:
                return await self._store.update(candidate)
            except RecordNotFoundError:
                return None
            except ConflictError:
                if attempt >= self._conflict_retries:
                    raise
            self._log.debug(
                "Conflict updating finalizers of {} (attempt {}/{}), re-fetching",
                record.key,
                attempt,
                self._conflict_retries,
            )
            attempt += 1
            try:
                current = await self._store.get(record.key)
            except RecordNotFoundError:
                return None
