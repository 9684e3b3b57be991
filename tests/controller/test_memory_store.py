"""Unit tests for MemoryRecordStore.

Covers the API-server-like behaviour the reconciler relies on: resource
versions, finalizer-gated deletion and the watch fan-out.
"""

from __future__ import annotations

import pytest

from runbridge.controller.errors import AlreadyExistsError, ConflictError, RecordNotFoundError
from runbridge.controller.models.resources import NamespacedName, ObjectMeta, TektonPipelineRun
from runbridge.controller.store.base import RecordStore
from runbridge.controller.store.memory import MemoryRecordStore

KEY = NamespacedName(namespace="ci", name="build-1")


def test_implements_protocol(store: MemoryRecordStore) -> None:
    assert isinstance(store, RecordStore)


async def test_get_missing(store: MemoryRecordStore) -> None:
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)


async def test_create_assigns_resource_version(store: MemoryRecordStore, make_record) -> None:
    created = store.create(make_record())
    assert created.metadata.resource_version == "1"
    with pytest.raises(AlreadyExistsError):
        store.create(make_record())


async def test_get_returns_copy(store: MemoryRecordStore, make_record) -> None:
    store.create(make_record())
    record = await store.get(KEY)
    record.metadata.finalizers.append("mutated")
    assert (await store.get(KEY)).metadata.finalizers == []


async def test_stale_update_conflicts(store: MemoryRecordStore, make_record) -> None:
    store.create(make_record())
    first = await store.get(KEY)
    second = await store.get(KEY)

    first.metadata.finalizers.append("a")
    await store.update(first)

    second.metadata.finalizers.append("b")
    with pytest.raises(ConflictError):
        await store.update(second)


async def test_update_missing(store: MemoryRecordStore, make_record) -> None:
    with pytest.raises(RecordNotFoundError):
        await store.update(make_record())


async def test_delete_without_finalizers_purges(store: MemoryRecordStore, make_record) -> None:
    store.create(make_record())
    store.delete(KEY)
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)


async def test_delete_with_finalizers_marks_deleting(store: MemoryRecordStore, make_record) -> None:
    store.create(make_record(finalizers=["a", "b"]))
    store.delete(KEY)

    record = await store.get(KEY)
    assert record.is_deleting

    record.metadata.finalizers = ["b"]
    record = await store.update(record)
    assert record.metadata.finalizers == ["b"]

    record.metadata.finalizers = []
    await store.update(record)
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)


async def test_deleting_record_ignores_spec_and_new_finalizers(store: MemoryRecordStore, make_record) -> None:
    store.create(make_record(finalizers=["a"]))
    store.delete(KEY)
    record = await store.get(KEY)

    record.spec.pipeline_ref = "changed"
    record.metadata.finalizers.append("late")
    record.metadata.deletion_timestamp = None
    stored = await store.update(record)

    assert stored.spec.pipeline_ref == "tpl-a"
    assert stored.metadata.finalizers == ["a"]
    assert stored.is_deleting


async def test_derived_crud(store: MemoryRecordStore) -> None:
    run = TektonPipelineRun(metadata=ObjectMeta(name="build-1", namespace="ci"))
    await store.create_derived(run)
    with pytest.raises(AlreadyExistsError):
        await store.create_derived(run)

    assert (await store.get_derived(KEY)).key == KEY
    assert await store.derived_exists(KEY)

    await store.delete_derived(KEY)
    await store.delete_derived(KEY)  # already gone: no-op
    assert not await store.derived_exists(KEY)
    with pytest.raises(RecordNotFoundError):
        await store.get_derived(KEY)


async def test_watch_lists_then_follows(store: MemoryRecordStore, make_record) -> None:
    store.create(make_record("existing"))
    watch = store.watch_records()

    assert await anext(watch) == NamespacedName(namespace="ci", name="existing")

    store.create(make_record("new"))
    assert await anext(watch) == NamespacedName(namespace="ci", name="new")

    store.delete(NamespacedName(namespace="ci", name="new"))
    assert await anext(watch) == NamespacedName(namespace="ci", name="new")

    await watch.aclose()
    # Closed watchers are dropped from the fan-out.
    store.create(make_record("after-close"))
