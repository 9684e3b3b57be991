"""In-memory record store.

Behaves like a small API server for the two resource kinds the controller
touches: every write bumps a resource version, stale updates are rejected
with ``ConflictError``, and a record with finalizers is only marked for
deletion until the last finalizer is removed.  Used by the test suite and by
dry runs; nothing is persisted.

Every change to a record is fanned out to the active ``watch_records``
iterators, which start with the keys of all existing records (initial list).
"""

from __future__ import annotations

import itertools
import math
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import anyio

from runbridge.controller.errors import AlreadyExistsError, ConflictError, RecordNotFoundError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from anyio.streams.memory import MemoryObjectSendStream

    from runbridge.controller.models.resources import NamespacedName, PipelineRun, TektonPipelineRun


class MemoryRecordStore:
    """In-memory implementation of the RecordStore protocol."""

    def __init__(self) -> None:
        self._records: dict[NamespacedName, PipelineRun] = {}
        self._derived: dict[NamespacedName, TektonPipelineRun] = {}
        self._versions = itertools.count(1)
        self._subscribers: set[MemoryObjectSendStream[NamespacedName]] = set()

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _notify(self, key: NamespacedName) -> None:
        for stream in list(self._subscribers):
            try:
                stream.send_nowait(key)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._subscribers.discard(stream)

    # -- External actor --------------------------------------------------------

    def create(self, record: PipelineRun) -> PipelineRun:
        """Add a new record, as a user submitting a PipelineRun would."""
        key = record.key
        if key in self._records:
            raise AlreadyExistsError(str(key))
        stored = record.model_copy(deep=True)
        stored.metadata.resource_version = self._next_version()
        self._records[key] = stored
        self._notify(key)
        return stored.model_copy(deep=True)

    def delete(self, key: NamespacedName) -> None:
        """Request deletion of a record.

        A record without finalizers is purged immediately; otherwise only its
        deletion timestamp is set and purging waits for the finalizers.
        """
        stored = self._records.get(key)
        if stored is None:
            raise RecordNotFoundError(str(key))
        if not stored.metadata.finalizers:
            del self._records[key]
        elif stored.metadata.deletion_timestamp is None:
            stored.metadata.deletion_timestamp = datetime.now(UTC)
            stored.metadata.resource_version = self._next_version()
        self._notify(key)

    # -- Records ---------------------------------------------------------------

    async def get(self, key: NamespacedName) -> PipelineRun:
        stored = self._records.get(key)
        if stored is None:
            raise RecordNotFoundError(str(key))
        return stored.model_copy(deep=True)

    async def update(self, record: PipelineRun) -> PipelineRun:
        key = record.key
        stored = self._records.get(key)
        if stored is None:
            raise RecordNotFoundError(str(key))
        if record.metadata.resource_version != stored.metadata.resource_version:
            msg = (
                f"{key}: resource version {record.metadata.resource_version} "
                f"is stale (current {stored.metadata.resource_version})"
            )
            raise ConflictError(msg)

        if stored.is_deleting:
            # Only finalizer removal is honoured once deletion has begun.
            updated = stored.model_copy(deep=True)
            updated.metadata.finalizers = [f for f in stored.metadata.finalizers if f in record.metadata.finalizers]
        else:
            updated = record.model_copy(deep=True)
            updated.metadata.deletion_timestamp = None

        updated.metadata.resource_version = self._next_version()
        if updated.is_deleting and not updated.metadata.finalizers:
            del self._records[key]
        else:
            self._records[key] = updated
        self._notify(key)
        return updated.model_copy(deep=True)

    def list_records(self) -> list[PipelineRun]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    # -- Derived resources -----------------------------------------------------

    async def get_derived(self, key: NamespacedName) -> TektonPipelineRun:
        stored = self._derived.get(key)
        if stored is None:
            raise RecordNotFoundError(str(key))
        return stored.model_copy(deep=True)

    async def derived_exists(self, key: NamespacedName) -> bool:
        return key in self._derived

    async def create_derived(self, resource: TektonPipelineRun) -> TektonPipelineRun:
        key = resource.key
        if key in self._derived:
            raise AlreadyExistsError(str(key))
        stored = resource.model_copy(deep=True)
        stored.metadata.resource_version = self._next_version()
        self._derived[key] = stored
        return stored.model_copy(deep=True)

    async def delete_derived(self, key: NamespacedName) -> None:
        self._derived.pop(key, None)

    def list_derived(self) -> list[TektonPipelineRun]:
        return [r.model_copy(deep=True) for r in self._derived.values()]

    # -- Watch -----------------------------------------------------------------

    async def watch_records(self) -> AsyncIterator[NamespacedName]:
        send, receive = anyio.create_memory_object_stream(math.inf)
        for key in list(self._records):
            send.send_nowait(key)
        self._subscribers.add(send)
        try:
            async with receive:
                async for key in receive:
                    yield key
        finally:
            self._subscribers.discard(send)
            send.close()
