"""Record store interface used by the reconciler.

A record store gives the reconciler read/write access to two kinds of
objects: declarative ``PipelineRun`` records (get, update metadata) and the
Tekton ``PipelineRun`` resources derived from them (get, create, delete).
It also yields the keys of records that changed, which the controller
manager turns into reconcile calls.

The interface is async so that both the in-memory backend and the blocking
Kubernetes client (run in the thread pool) fit behind it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from runbridge.controller.models.resources import NamespacedName, PipelineRun, TektonPipelineRun


@runtime_checkable
class WatchSource(Protocol):
    """Anything that reports changed record keys."""

    def watch_records(self) -> AsyncIterator[NamespacedName]:
        """Yield the key of every record that was added, modified or deleted."""
        ...


@runtime_checkable
class RecordStore(WatchSource, Protocol):
    """Async protocol for record and derived-resource access.

    Implementations raise the domain exceptions from
    ``runbridge.controller.errors`` and never client-library ones.
    """

    async def get(self, key: NamespacedName) -> PipelineRun:
        """Fetch a record.  Raises ``RecordNotFoundError`` if missing."""
        ...

    async def update(self, record: PipelineRun) -> PipelineRun:
        """Persist a record and return the stored version.

        Raises ``ConflictError`` if ``metadata.resource_version`` is stale and
        ``RecordNotFoundError`` if the record is gone.  Safe to retry after a
        re-fetch.
        """
        ...

    async def get_derived(self, key: NamespacedName) -> TektonPipelineRun:
        """Fetch a derived resource.  Raises ``RecordNotFoundError`` if missing."""
        ...

    async def derived_exists(self, key: NamespacedName) -> bool:
        """Whether a derived resource named *key* exists, whatever its content."""
        ...

    async def create_derived(self, resource: TektonPipelineRun) -> TektonPipelineRun:
        """Create a derived resource.  Raises ``AlreadyExistsError`` if the name is taken."""
        ...

    async def delete_derived(self, key: NamespacedName) -> None:
        """Delete a derived resource.  No-op if not found."""
        ...
