"""Shared fixtures for controller unit tests.

Everything runs against ``MemoryRecordStore`` -- no cluster required.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest
from loguru import logger

from runbridge.controller.models.resources import DEFAULT_FINALIZER, ObjectMeta, PipelineRun, PipelineRunSpec
from runbridge.controller.reconcile.reconciler import PipelineRunReconciler
from runbridge.controller.store.memory import MemoryRecordStore


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def reconciler(store: MemoryRecordStore) -> PipelineRunReconciler:
    return PipelineRunReconciler(store, finalizer_name=DEFAULT_FINALIZER)


@pytest.fixture
def make_record() -> Callable[..., PipelineRun]:
    """Factory for PipelineRun records; defaults to ``ci/build-1`` running ``tpl-a``."""

    def _make(
        name: str = "build-1",
        *,
        namespace: str = "ci",
        run_name: str | None = None,
        pipeline_ref: str = "tpl-a",
        finalizers: list[str] | None = None,
    ) -> PipelineRun:
        return PipelineRun(
            metadata=ObjectMeta(name=name, namespace=namespace, finalizers=finalizers or []),
            spec=PipelineRunSpec(name=run_name or name, pipeline_ref=pipeline_ref),
        )

    return _make


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect loguru messages emitted during the test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
