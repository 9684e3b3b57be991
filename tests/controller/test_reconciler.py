"""Unit tests for the PipelineRun reconciler state machine."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from runbridge.controller.errors import AlreadyExistsError, ConflictError, RecordNotFoundError, StoreError
from runbridge.controller.models.resources import DEFAULT_FINALIZER as FINALIZER
from runbridge.controller.models.resources import (
    NamespacedName,
    ObjectMeta,
    PipelineRef,
    TektonPipelineRun,
    TektonPipelineRunSpec,
)
from runbridge.controller.reconcile.reconciler import WATCH_KIND, PipelineRunReconciler, ReconcileOutcome

KEY = NamespacedName(namespace="ci", name="build-1")


async def _reconcile_until_created(reconciler: PipelineRunReconciler, key: NamespacedName = KEY) -> None:
    first = await reconciler.reconcile(key)
    assert first.succeeded
    second = await reconciler.reconcile(key)
    assert second == ReconcileOutcome.ok()


# ---------------------------------------------------------------------------
# ReconcileOutcome
# ---------------------------------------------------------------------------


def test_outcome_constructors() -> None:
    err = StoreError("boom")
    assert ReconcileOutcome.ok() == ReconcileOutcome(requeue=False, error=None)
    assert ReconcileOutcome.ok(requeue=True).succeeded
    assert ReconcileOutcome.retry(err) == ReconcileOutcome(requeue=True, error=err)
    assert ReconcileOutcome.fatal(err) == ReconcileOutcome(requeue=False, error=err)
    assert not ReconcileOutcome.fatal(err).succeeded


# ---------------------------------------------------------------------------
# Missing record
# ---------------------------------------------------------------------------


async def test_missing_record_is_ok(reconciler) -> None:
    outcome = await reconciler.reconcile(KEY)
    assert outcome == ReconcileOutcome.ok()


async def test_get_failure_is_retry(store, reconciler) -> None:
    store.get = AsyncMock(side_effect=StoreError("apiserver unavailable"))
    outcome = await reconciler.reconcile(KEY)
    assert outcome.requeue is True
    assert isinstance(outcome.error, StoreError)


async def test_unexpected_exception_is_retry(store, reconciler) -> None:
    store.get = AsyncMock(side_effect=RuntimeError("bug"))
    outcome = await reconciler.reconcile(KEY)
    assert outcome.requeue is True
    assert isinstance(outcome.error, RuntimeError)


# ---------------------------------------------------------------------------
# Active: finalizer registration
# ---------------------------------------------------------------------------


async def test_first_reconcile_adds_finalizer_without_creating(store, reconciler, make_record) -> None:
    store.create(make_record())
    create_spy = AsyncMock(wraps=store.create_derived)
    store.create_derived = create_spy

    outcome = await reconciler.reconcile(KEY)

    assert outcome.succeeded
    assert outcome.requeue is True
    record = await store.get(KEY)
    assert record.metadata.finalizers == [FINALIZER]
    assert store.list_derived() == []
    create_spy.assert_not_called()


async def test_finalizer_added_alongside_foreign_finalizers(store, reconciler, make_record) -> None:
    store.create(make_record(finalizers=["example.com/other"]))
    await reconciler.reconcile(KEY)
    record = await store.get(KEY)
    assert record.metadata.finalizers == ["example.com/other", FINALIZER]


async def test_conflict_on_finalizer_add_is_refetched(store, reconciler, make_record) -> None:
    store.create(make_record())
    real_update = store.update
    calls = 0

    async def _flaky_update(record):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ConflictError("stale resource version")
        return await real_update(record)

    store.update = _flaky_update
    outcome = await reconciler.reconcile(KEY)

    assert outcome.succeeded
    assert calls == 2
    record = await store.get(KEY)
    assert record.metadata.finalizers == [FINALIZER]


async def test_persistent_conflict_is_retry(store, make_record) -> None:
    store.create(make_record())
    store.update = AsyncMock(side_effect=ConflictError("stale"))
    reconciler = PipelineRunReconciler(store, finalizer_name=FINALIZER, conflict_retries=3)

    outcome = await reconciler.reconcile(KEY)

    assert outcome.requeue is True
    assert isinstance(outcome.error, ConflictError)
    assert store.update.await_count == 3


async def test_record_deleted_during_conflict_is_ok(store, reconciler, make_record) -> None:
    store.create(make_record())

    async def _delete_then_conflict(record):
        store.delete(KEY)  # no finalizers yet, so the record is purged
        raise ConflictError("stale")

    store.update = _delete_then_conflict
    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)


async def test_record_deleted_while_adding_finalizer_is_not_registered(
    store, reconciler, make_record, log_messages
) -> None:
    store.create(make_record(finalizers=["example.com/other"]))

    async def _delete_then_conflict(record):
        store.delete(KEY)  # foreign finalizer keeps the record around
        raise ConflictError("stale")

    store.update = _delete_then_conflict
    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()
    record = await store.get(KEY)
    assert record.is_deleting
    assert record.metadata.finalizers == ["example.com/other"]
    assert any("began deleting" in m for m in log_messages)
    assert not any("registered" in m and "before" not in m for m in log_messages)


# ---------------------------------------------------------------------------
# Active: derived resource
# ---------------------------------------------------------------------------


async def test_scenario_build_1_creates_tekton_run(store, reconciler, make_record) -> None:
    store.create(make_record("build-1", namespace="ci", pipeline_ref="tpl-a"))

    await _reconcile_until_created(reconciler)

    derived = store.list_derived()
    assert len(derived) == 1
    assert derived[0].metadata.namespace == "ci"
    assert derived[0].metadata.name == "build-1"
    assert derived[0].spec.pipeline_ref is not None
    assert derived[0].spec.pipeline_ref.name == "tpl-a"


async def test_derived_name_comes_from_spec_name(store, reconciler, make_record) -> None:
    store.create(make_record("pr-7", run_name="tekton-run-7"))
    key = NamespacedName(namespace="ci", name="pr-7")

    await _reconcile_until_created(reconciler, key)

    derived = await store.get_derived(NamespacedName(namespace="ci", name="tekton-run-7"))
    assert derived.spec.pipeline_ref.name == "tpl-a"


async def test_repeated_reconcile_is_idempotent(store, reconciler, make_record) -> None:
    store.create(make_record())
    for _ in range(5):
        outcome = await reconciler.reconcile(KEY)
        assert outcome.succeeded

    assert len(store.list_derived()) == 1
    record = await store.get(KEY)
    assert record.metadata.finalizers == [FINALIZER]


async def test_existing_derived_is_left_untouched(store, reconciler, make_record, log_messages) -> None:
    store.create(make_record(finalizers=[FINALIZER]))
    await store.create_derived(
        TektonPipelineRun(
            metadata=ObjectMeta(name="build-1", namespace="ci"),
            spec=TektonPipelineRunSpec(pipeline_ref=PipelineRef(name="someone-elses-template")),
        )
    )

    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()
    derived = await store.get_derived(KEY)
    assert derived.spec.pipeline_ref.name == "someone-elses-template"
    assert any("already exists" in m for m in log_messages)


async def test_create_already_exists_is_benign(store, reconciler, make_record) -> None:
    store.create(make_record(finalizers=[FINALIZER]))
    store.create_derived = AsyncMock(side_effect=AlreadyExistsError("ci/build-1"))

    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()


async def test_create_failure_is_retry(store, reconciler, make_record) -> None:
    store.create(make_record(finalizers=[FINALIZER]))
    store.create_derived = AsyncMock(side_effect=StoreError("timeout"))

    outcome = await reconciler.reconcile(KEY)

    assert outcome.requeue is True
    assert isinstance(outcome.error, StoreError)


async def test_many_keys_reconcile_concurrently(store, reconciler, make_record) -> None:
    keys = []
    for i in range(10):
        record = make_record(f"build-{i}")
        store.create(record)
        keys.append(record.key)

    for _ in range(2):
        outcomes = await asyncio.gather(*(reconciler.reconcile(k) for k in keys))
        assert all(o.succeeded for o in outcomes)

    assert sorted(d.metadata.name for d in store.list_derived()) == sorted(k.name for k in keys)


# ---------------------------------------------------------------------------
# Deleting
# ---------------------------------------------------------------------------


async def test_scenario_deletion_cleans_up_and_releases(store, reconciler, make_record) -> None:
    store.create(make_record())
    await _reconcile_until_created(reconciler)
    store.delete(KEY)
    update_spy = AsyncMock(wraps=store.update)
    store.update = update_spy

    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()
    assert store.list_derived() == []
    released = update_spy.await_args.args[0]
    assert released.metadata.finalizers == []
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)

    # Once purged, another pass has nothing to do.
    assert await reconciler.reconcile(KEY) == ReconcileOutcome.ok()


async def test_deletion_when_derived_already_gone(store, reconciler, make_record) -> None:
    store.create(make_record())
    await _reconcile_until_created(reconciler)
    await store.delete_derived(KEY)
    store.delete(KEY)

    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)


async def test_deletion_failure_keeps_finalizer(store, reconciler, make_record, log_messages) -> None:
    store.create(make_record())
    await _reconcile_until_created(reconciler)
    store.delete(KEY)
    store.delete_derived = AsyncMock(side_effect=StoreError("apiserver unavailable"))

    outcome = await reconciler.reconcile(KEY)

    assert outcome.requeue is True
    assert isinstance(outcome.error, StoreError)
    record = await store.get(KEY)
    assert record.is_deleting
    assert record.metadata.finalizers == [FINALIZER]
    assert any("delete Tekton PipelineRun" in m for m in log_messages)


async def test_deletion_retry_after_partial_failure(store, reconciler, make_record) -> None:
    store.create(make_record())
    await _reconcile_until_created(reconciler)
    store.delete(KEY)

    real_update = store.update
    store.update = AsyncMock(side_effect=StoreError("timeout"))
    first = await reconciler.reconcile(KEY)
    assert first.requeue is True
    assert store.list_derived() == []

    # The derived run is already gone; the retry must still release the record.
    store.update = real_update
    second = await reconciler.reconcile(KEY)
    assert second == ReconcileOutcome.ok()
    with pytest.raises(RecordNotFoundError):
        await store.get(KEY)


async def test_deleting_without_our_finalizer_is_noop(store, reconciler, make_record) -> None:
    store.create(make_record(finalizers=["example.com/other"]))
    await store.create_derived(
        TektonPipelineRun(
            metadata=ObjectMeta(name="build-1", namespace="ci"),
            spec=TektonPipelineRunSpec(pipeline_ref=PipelineRef(name="tpl-a")),
        )
    )
    store.delete(KEY)
    store.update = AsyncMock()

    outcome = await reconciler.reconcile(KEY)

    assert outcome == ReconcileOutcome.ok()
    store.update.assert_not_called()
    assert len(store.list_derived()) == 1


async def test_deleting_record_never_gets_finalizer(store, reconciler, make_record) -> None:
    store.create(make_record(finalizers=["example.com/other"]))
    store.delete(KEY)

    await reconciler.reconcile(KEY)

    record = await store.get(KEY)
    assert record.metadata.finalizers == ["example.com/other"]
    assert store.list_derived() == []


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_setup_with_manager_registers_watch(store, reconciler) -> None:
    manager = MagicMock()
    reconciler.setup_with_manager(manager)
    manager.watch.assert_called_once_with(WATCH_KIND, reconciler.reconcile, source=store)
    assert WATCH_KIND == "pipelineruns.devops.kubesphere.io"
