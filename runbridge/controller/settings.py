"""Controller configuration loaded from RUNBRIDGE_* environment variables."""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from runbridge.controller.models.enums import PipelineBackend
from runbridge.controller.models.resources import DEFAULT_FINALIZER


class ControllerSettings(BaseSettings):
    """PipelineRun controller settings.

    All fields are read from environment variables with the ``RUNBRIDGE_``
    prefix.  For example, ``RUNBRIDGE_MAX_WORKERS=8`` maps to ``max_workers``.
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Backend ---------------------------------------------------------------
    pipeline_backend: PipelineBackend = PipelineBackend.TEKTON
    """Execution engine.  Only ``tekton`` is served by this controller."""

    kubeconfig: str | None = None
    """Path to a kubeconfig file.  In-cluster config is tried first when unset."""

    watch_namespace: str | None = None
    """Restrict the watch to one namespace.  ``None`` watches all namespaces."""

    finalizer_name: str = DEFAULT_FINALIZER

    # -- Reconciliation --------------------------------------------------------
    max_workers: int = Field(default=4, ge=1)
    """Number of keys reconciled concurrently."""

    conflict_retries: int = Field(default=3, ge=1)
    """Re-fetch attempts for a finalizer update that hits a version conflict."""

    backoff_base_delay: float = Field(default=0.005, gt=0)
    backoff_max_delay: float = Field(default=1000.0, gt=0)
    """Per-key exponential requeue delay: ``base * 2**failures``, capped at this value."""

    watch_timeout_seconds: int = Field(default=300, ge=1)
    """Length of one watch window; every new window re-lists all records."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8081
    graceful_shutdown_timeout: int = 30
    """Seconds to wait for in-flight reconciliations during shutdown."""

    @field_validator("pipeline_backend", mode="before")
    @classmethod
    def _lower_backend(cls, value: object) -> object:
        # Accept capitalised spellings such as "Tekton".
        return value.lower() if isinstance(value, str) else value


def get_settings() -> ControllerSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> ControllerSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return ControllerSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
