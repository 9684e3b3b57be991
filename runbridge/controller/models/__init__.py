"""Data models for the controller."""

from runbridge.controller.models.enums import PipelineBackend, WatchEventType
from runbridge.controller.models.resources import (
    DEFAULT_FINALIZER,
    NamespacedName,
    ObjectMeta,
    PipelineRef,
    PipelineRun,
    PipelineRunSpec,
    TektonPipelineRun,
    TektonPipelineRunSpec,
)

__all__ = [
    "DEFAULT_FINALIZER",
    "NamespacedName",
    "ObjectMeta",
    "PipelineBackend",
    "PipelineRef",
    "PipelineRun",
    "PipelineRunSpec",
    "TektonPipelineRun",
    "TektonPipelineRunSpec",
    "WatchEventType",
]
