"""Translate a KubeSphere PipelineRun into the Tekton PipelineRun that executes it.

Only the pipeline reference is carried over; resolving the referenced
Pipeline and its parameters is left to Tekton.
"""

from __future__ import annotations

from runbridge.controller.models.resources import (
    NamespacedName,
    ObjectMeta,
    PipelineRef,
    PipelineRun,
    TektonPipelineRun,
    TektonPipelineRunSpec,
)


def derived_key(record: PipelineRun) -> NamespacedName:
    """Key of the Tekton PipelineRun owned by *record*: same namespace, ``spec.name``."""
    return NamespacedName(namespace=record.metadata.namespace, name=record.spec.name)


def translate(record: PipelineRun) -> TektonPipelineRun:
    key = derived_key(record)
    return TektonPipelineRun(
        metadata=ObjectMeta(name=key.name, namespace=key.namespace),
        spec=TektonPipelineRunSpec(pipeline_ref=PipelineRef(name=record.spec.pipeline_ref)),
    )
