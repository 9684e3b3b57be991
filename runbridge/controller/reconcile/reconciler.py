"""PipelineRun reconciler.

Drives one KubeSphere PipelineRun record towards its desired state in a
single idempotent step:

1. **Fetch** the record.  A missing record means it is already gone.
2. **Active** (no deletion timestamp): register the finalizer first and end
   the call; once it is registered, make sure the Tekton PipelineRun exists.
3. **Deleting**: delete the Tekton PipelineRun, then release the finalizer so
   the API server can purge the record.

The reconciler never sleeps, locks or backs off.  Failures are reported as a
``ReconcileOutcome`` asking for a retry; the caller (``ControllerManager``)
owns the queue, the worker pool and the backoff.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger as _default_logger

from runbridge.controller.errors import AlreadyExistsError, RecordNotFoundError, StoreError
from runbridge.controller.models.resources import DEFAULT_FINALIZER, RECORD_GROUP, RECORD_PLURAL
from runbridge.controller.reconcile.finalizers import FinalizerManager
from runbridge.controller.reconcile.translator import derived_key, translate

if TYPE_CHECKING:
    from loguru import Logger

    from runbridge.controller.manager import ControllerManager
    from runbridge.controller.models.resources import NamespacedName, PipelineRun
    from runbridge.controller.store.base import RecordStore

WATCH_KIND = f"{RECORD_PLURAL}.{RECORD_GROUP}"


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconcile call, as seen by the scheduler.

    - ``ok``: done, forget the key (``requeue=True`` asks for one more pass).
    - ``retry``: failed, reconcile again later with backoff.
    - ``fatal``: failed, do not retry.  Not produced by the PipelineRun
      reconciler, which treats every failure as retryable.
    """

    requeue: bool = False
    error: BaseException | None = None

    @classmethod
    def ok(cls, *, requeue: bool = False) -> ReconcileOutcome:
        return cls(requeue=requeue)

    @classmethod
    def retry(cls, error: BaseException) -> ReconcileOutcome:
        return cls(requeue=True, error=error)

    @classmethod
    def fatal(cls, error: BaseException) -> ReconcileOutcome:
        return cls(requeue=False, error=error)

    @property
    def succeeded(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class PipelineRunReconciler:
    """Keeps each PipelineRun record paired with exactly one Tekton PipelineRun.

    Stateless beyond its references to the store and the logger, so one
    instance serves all keys concurrently.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        finalizer_name: str = DEFAULT_FINALIZER,
        conflict_retries: int = 3,
        logger: Logger | None = None,
    ) -> None:
        self._store = store
        self._log = (logger or _default_logger).bind(controller="pipelinerun")
        self._finalizers = FinalizerManager(
            store,
            finalizer_name,
            conflict_retries=conflict_retries,
            log=self._log,
        )

    def setup_with_manager(self, manager: ControllerManager) -> None:
        """Register this reconciler for PipelineRun records with *manager*."""
        manager.watch(WATCH_KIND, self.reconcile, source=self._store)

    # -- Entry point -----------------------------------------------------------

    async def reconcile(self, key: NamespacedName) -> ReconcileOutcome:
        log = self._log.bind(key=str(key))

        try:
            record = await self._store.get(key)
        except RecordNotFoundError:
            log.debug("PipelineRun not found, nothing to do")
            return ReconcileOutcome.ok()
        except Exception as exc:
            return _retry(log, "get PipelineRun", exc)

        if record.is_deleting:
            return await self._reconcile_deleting(record, log)
        return await self._reconcile_active(record, log)

    # -- Active ----------------------------------------------------------------

    async def _reconcile_active(self, record: PipelineRun, log: Logger) -> ReconcileOutcome:
        if not self._finalizers.has(record):
            # Must be persisted before the Tekton PipelineRun exists, otherwise a
            # crash right after creation would orphan it.
            try:
                stored = await self._finalizers.add(record)
            except Exception as exc:
                return _retry(log, "add finalizer", exc)
            if stored is None:
                log.debug("PipelineRun disappeared while adding finalizer")
                return ReconcileOutcome.ok()
            if not self._finalizers.has(stored):
                log.info("PipelineRun began deleting before finalizer {} was registered", self._finalizers.finalizer)
                return ReconcileOutcome.ok()
            log.info("Finalizer {} registered", self._finalizers.finalizer)
            return ReconcileOutcome.ok(requeue=True)

        try:
            await self._ensure_derived(record, log)
        except Exception as exc:
            return _retry(log, "create Tekton PipelineRun", exc)
        return ReconcileOutcome.ok()

    async def _ensure_derived(self, record: PipelineRun, log: Logger) -> None:
        desired = translate(record)
        if await self._store.derived_exists(desired.key):
            # Never updated in place; ownership across records is not checked.
            log.info("Tekton PipelineRun {} already exists", desired.key)
            return

        try:
            await self._store.create_derived(desired)
        except AlreadyExistsError:
            log.info("Tekton PipelineRun {} already exists", desired.key)
            return
        log.info("Tekton PipelineRun {} was created (pipelineRef={})", desired.key, record.spec.pipeline_ref)

    # -- Deleting --------------------------------------------------------------

    async def _reconcile_deleting(self, record: PipelineRun, log: Logger) -> ReconcileOutcome:
        if not self._finalizers.has(record):
            log.debug("PipelineRun is being deleted and holds no finalizer")
            return ReconcileOutcome.ok()

        try:
            await self._delete_derived(record, log)
        except Exception as exc:
            return _retry(log, "delete Tekton PipelineRun", exc)

        try:
            await self._finalizers.remove(record)
        except Exception as exc:
            return _retry(log, "remove finalizer", exc)
        log.info("Finalizer {} removed", self._finalizers.finalizer)
        return ReconcileOutcome.ok()

    async def _delete_derived(self, record: PipelineRun, log: Logger) -> None:
        """Delete the Tekton PipelineRun, if any.

        Returns once the delete call succeeds; Tekton garbage-collects the
        TaskRuns and Pods it spawned.
        """
        key = derived_key(record)
        log.info("PipelineRun is under deletion, cleaning up Tekton PipelineRun {}", key)
        if not await self._store.derived_exists(key):
            log.debug("Tekton PipelineRun {} not found, nothing to delete", key)
            return
        await self._store.delete_derived(key)
        log.info("Tekton PipelineRun {} was deleted", key)


def _retry(log: Logger, operation: str, exc: Exception) -> ReconcileOutcome:
    if isinstance(exc, StoreError):
        log.warning("Failed to {}: {}", operation, exc)
    else:
        log.opt(exception=exc).error("Failed to {}: {}", operation, exc)
    return ReconcileOutcome.retry(exc)
