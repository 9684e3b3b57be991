"""Shared enumerations used across the controller."""

from __future__ import annotations

from enum import StrEnum


class PipelineBackend(StrEnum):
    """Execution engine that derived resources are created for."""

    TEKTON = "tekton"
    JENKINS = "jenkins"


class WatchEventType(StrEnum):
    """Event types delivered by a Kubernetes watch stream."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"
