"""Resource models for declarative records and derived Tekton runs.

Field names follow Python conventions; camelCase aliases match the Kubernetes
wire format, so ``to_manifest()`` output can be sent to the API server as-is.
Unknown fields (labels, annotations, status, managedFields, ...) are kept as
model extras so a read-modify-write cycle does not drop them.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# -- API coordinates -----------------------------------------------------------

RECORD_GROUP = "devops.kubesphere.io"
RECORD_VERSION = "v2alpha1"
RECORD_PLURAL = "pipelineruns"
RECORD_KIND = "PipelineRun"

DERIVED_GROUP = "tekton.dev"
DERIVED_VERSION = "v1beta1"
DERIVED_PLURAL = "pipelineruns"
DERIVED_KIND = "PipelineRun"

DEFAULT_FINALIZER = "pipelinerun.finalizers.kubesphere.io"


class NamespacedName(BaseModel):
    """Identity of a namespaced object.  Hashable, rendered as ``namespace/name``."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> NamespacedName:
        """Parse ``namespace/name``.  Raises ``ValueError`` on malformed input."""
        namespace, sep, name = key.partition("/")
        if not sep or not namespace or not name or "/" in name:
            msg = f"Invalid key '{key}': expected 'namespace/name'"
            raise ValueError(msg)
        return cls(namespace=namespace, name=name)


class _KubeModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ObjectMeta(_KubeModel):
    name: str
    namespace: str
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = None
    resource_version: str | None = None


# -- Declarative record --------------------------------------------------------


class PipelineRunSpec(_KubeModel):
    name: str = Field(description="Name of the derived Tekton PipelineRun")
    pipeline_ref: str = Field(description="Name of the Tekton Pipeline to run")


class PipelineRun(_KubeModel):
    """KubeSphere PipelineRun record (``devops.kubesphere.io/v2alpha1``)."""

    api_version: str = f"{RECORD_GROUP}/{RECORD_VERSION}"
    kind: str = RECORD_KIND
    metadata: ObjectMeta
    spec: PipelineRunSpec

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def to_manifest(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# -- Derived resource ----------------------------------------------------------


class PipelineRef(_KubeModel):
    # Resolver references (``resolver`` + ``params``) carry no name.
    name: str | None = None


class TektonPipelineRunSpec(_KubeModel):
    # Optional on read: runs created by other tools may embed a pipelineSpec instead.
    pipeline_ref: PipelineRef | None = None


class TektonPipelineRun(_KubeModel):
    """Tekton PipelineRun (``tekton.dev/v1beta1``)."""

    api_version: str = f"{DERIVED_GROUP}/{DERIVED_VERSION}"
    kind: str = DERIVED_KIND
    metadata: ObjectMeta
    spec: TektonPipelineRunSpec = Field(default_factory=TektonPipelineRunSpec)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.metadata.namespace, name=self.metadata.name)

    def to_manifest(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
