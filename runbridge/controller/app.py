from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, status
from fastapi.routing import APIRouter
from loguru import logger

from runbridge.controller.errors import UnsupportedBackendError
from runbridge.controller.log import setup_logging
from runbridge.controller.manager import ControllerManager
from runbridge.controller.models.enums import PipelineBackend
from runbridge.controller.reconcile.reconciler import WATCH_KIND, PipelineRunReconciler
from runbridge.controller.settings import ControllerSettings, get_settings
from runbridge.controller.store.base import RecordStore


def create_record_store(settings: ControllerSettings) -> RecordStore:
    """Create the record store for the configured pipeline backend."""
    if settings.pipeline_backend != PipelineBackend.TEKTON:
        msg = f"Pipeline backend '{settings.pipeline_backend}' is not served by this controller; expected 'tekton'"
        raise UnsupportedBackendError(msg)

    from runbridge.controller.store.kubernetes import KubernetesRecordStore, create_custom_objects_api

    return KubernetesRecordStore(
        create_custom_objects_api(settings.kubeconfig),
        namespace=settings.watch_namespace,
        watch_timeout_seconds=settings.watch_timeout_seconds,
    )


def create_manager(settings: ControllerSettings, store: RecordStore) -> ControllerManager:
    """Build a manager with the PipelineRun reconciler registered on it."""
    manager = ControllerManager(
        max_workers=settings.max_workers,
        backoff_base_delay=settings.backoff_base_delay,
        backoff_max_delay=settings.backoff_max_delay,
    )
    PipelineRunReconciler(
        store,
        finalizer_name=settings.finalizer_name,
        conflict_retries=settings.conflict_retries,
    ).setup_with_manager(manager)
    return manager


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("PipelineRun controller starting (backend={})", settings.pipeline_backend)
    namespace_info = settings.watch_namespace or "all namespaces"
    logger.info("Watching {} in {} (workers={})", WATCH_KIND, namespace_info, settings.max_workers)

    _app.state.manager = None
    store = create_record_store(settings)
    manager = create_manager(settings, store)
    manager.start()
    _app.state.manager = manager

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("PipelineRun controller shutting down")
    drained = await manager.stop(timeout=settings.graceful_shutdown_timeout)
    if not drained:
        logger.warning("Cancelled in-flight reconciles after {}s", settings.graceful_shutdown_timeout)


app = FastAPI(title="runbridge PipelineRun controller", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- health checks and queue inspection live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


def _manager() -> ControllerManager | None:
    return getattr(app.state, "manager", None)


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@api.get("/ready")
async def ready() -> dict[str, str]:
    manager = _manager()
    if manager is None or not manager.is_running:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Manager not running.")
    return {"status": "ready"}


@api.get("/queue")
async def queue_stats() -> dict[str, dict[str, int]]:
    """Queued and in-flight keys per watched kind."""
    manager = _manager()
    if manager is None:
        return {}
    stats: dict[str, dict[str, int]] = {}
    for kind in manager.kinds:
        queue = manager.queue_for(kind)
        stats[kind] = {"queued": len(queue), "processing": queue.processing_count}
    return stats


app.include_router(api)
