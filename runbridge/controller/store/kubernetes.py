"""Kubernetes record store.

Reads and writes both resource kinds through the custom-objects API:

    devops.kubesphere.io/v2alpha1 pipelineruns   (declarative records)
    tekton.dev/v1beta1 pipelineruns              (derived resources)

The kubernetes client is blocking, so every call (watch streams included) runs
in a worker thread via ``anyio.to_thread.run_sync``.  ``ApiException`` status
codes are mapped onto the domain errors: 404 -> ``RecordNotFoundError``,
409 -> ``ConflictError`` (``AlreadyExistsError`` on create), anything else ->
``StoreError``.

Record updates are full replaces carrying ``metadata.resourceVersion``, so the
API server rejects stale writes with 409.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from functools import partial
from typing import TYPE_CHECKING, Any

from anyio import to_thread
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from runbridge.controller.errors import AlreadyExistsError, ConflictError, RecordNotFoundError, StoreError
from runbridge.controller.models.enums import WatchEventType
from runbridge.controller.models.resources import (
    DERIVED_GROUP,
    DERIVED_PLURAL,
    DERIVED_VERSION,
    RECORD_GROUP,
    RECORD_PLURAL,
    RECORD_VERSION,
    NamespacedName,
    PipelineRun,
    TektonPipelineRun,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

_WINDOW_END = object()

# Client-side bound on one watch request, on top of the server-side window.
WATCH_REQUEST_SLACK = 30


def create_custom_objects_api(kubeconfig: str | None = None) -> client.CustomObjectsApi:
    """Create a CustomObjectsApi client.

    Args:
        kubeconfig: Path to a kubeconfig file.  When unset, in-cluster
            configuration is tried first, then the default kubeconfig.
    """
    if kubeconfig:
        return client.CustomObjectsApi(config.new_client_from_config(config_file=kubeconfig))
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.CustomObjectsApi(client.ApiClient())


def _store_error(exc: Exception, operation: str, key: NamespacedName) -> StoreError:
    if isinstance(exc, ApiException):
        if exc.status == 404:
            return RecordNotFoundError(f"{operation} {key}: not found")
        if exc.status == 409:
            return ConflictError(f"{operation} {key}: {exc.reason}")
        return StoreError(f"{operation} {key}: {exc.status} {exc.reason}")
    return StoreError(f"{operation} {key}: {exc}")


class KubernetesRecordStore:
    """Kubernetes implementation of the RecordStore protocol."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        *,
        namespace: str | None = None,
        watch_timeout_seconds: int = 300,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        self._api = api
        self._namespace = namespace
        self._watch_timeout = watch_timeout_seconds
        self._watch_factory = watch_factory

    async def _call(
        self, operation: str, key: NamespacedName, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return await to_thread.run_sync(partial(fn, *args, **kwargs))
        except (ApiException, HTTPError) as exc:
            raise _store_error(exc, operation, key) from exc

    # -- Records ---------------------------------------------------------------

    async def get(self, key: NamespacedName) -> PipelineRun:
        obj = await self._call(
            "get",
            key,
            self._api.get_namespaced_custom_object,
            RECORD_GROUP,
            RECORD_VERSION,
            key.namespace,
            RECORD_PLURAL,
            key.name,
        )
        return PipelineRun.model_validate(obj)

    async def update(self, record: PipelineRun) -> PipelineRun:
        key = record.key
        obj = await self._call(
            "update",
            key,
            self._api.replace_namespaced_custom_object,
            RECORD_GROUP,
            RECORD_VERSION,
            key.namespace,
            RECORD_PLURAL,
            key.name,
            record.to_manifest(),
        )
        return PipelineRun.model_validate(obj)

    # -- Derived resources -----------------------------------------------------

    async def get_derived(self, key: NamespacedName) -> TektonPipelineRun:
        obj = await self._call(
            "get derived",
            key,
            self._api.get_namespaced_custom_object,
            DERIVED_GROUP,
            DERIVED_VERSION,
            key.namespace,
            DERIVED_PLURAL,
            key.name,
        )
        return TektonPipelineRun.model_validate(obj)

    async def derived_exists(self, key: NamespacedName) -> bool:
        # The body is not parsed: runs created by other tools may not match our model.
        try:
            await self._call(
                "get derived",
                key,
                self._api.get_namespaced_custom_object,
                DERIVED_GROUP,
                DERIVED_VERSION,
                key.namespace,
                DERIVED_PLURAL,
                key.name,
            )
        except RecordNotFoundError:
            return False
        return True

    async def create_derived(self, resource: TektonPipelineRun) -> TektonPipelineRun:
        key = resource.key
        try:
            obj = await self._call(
                "create derived",
                key,
                self._api.create_namespaced_custom_object,
                DERIVED_GROUP,
                DERIVED_VERSION,
                key.namespace,
                DERIVED_PLURAL,
                resource.to_manifest(),
            )
        except ConflictError as exc:
            raise AlreadyExistsError(str(key)) from exc
        return TektonPipelineRun.model_validate(obj)

    async def delete_derived(self, key: NamespacedName) -> None:
        try:
            await self._call(
                "delete derived",
                key,
                self._api.delete_namespaced_custom_object,
                DERIVED_GROUP,
                DERIVED_VERSION,
                key.namespace,
                DERIVED_PLURAL,
                key.name,
            )
        except RecordNotFoundError:
            logger.debug("Tekton PipelineRun {} already gone", key)

    # -- Watch -----------------------------------------------------------------

    async def watch_records(self) -> AsyncIterator[NamespacedName]:
        """Yield changed record keys, one watch window after another.

        Each window starts without a resource version, so the API server
        replays every existing record as ADDED -- a periodic full resync.
        """
        while True:
            async with aclosing(self._watch_window()) as window:
                async for key in window:
                    yield key

    def _list_call(self) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        if self._namespace:
            return self._api.list_namespaced_custom_object, (
                RECORD_GROUP,
                RECORD_VERSION,
                self._namespace,
                RECORD_PLURAL,
            )
        return self._api.list_cluster_custom_object, (RECORD_GROUP, RECORD_VERSION, RECORD_PLURAL)

    async def _watch_window(self) -> AsyncIterator[NamespacedName]:
        loop = asyncio.get_running_loop()
        events: asyncio.Queue[Any] = asyncio.Queue()
        stream = self._watch_factory()
        fn, args = self._list_call()

        def _put(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(events.put_nowait, item)
            except RuntimeError:
                # Event loop closed: nobody is left to consume the window.
                stream.stop()

        def _run() -> None:
            try:
                for event in stream.stream(
                    fn,
                    *args,
                    timeout_seconds=self._watch_timeout,
                    _request_timeout=self._watch_timeout + WATCH_REQUEST_SLACK,
                ):
                    _put(event)
            except Exception as exc:  # handed over to the event loop below
                _put(exc)
            else:
                _put(_WINDOW_END)

        # Abandoned on cancel; stream.stop() shuts the socket so the thread exits.
        reader = asyncio.ensure_future(to_thread.run_sync(_run, abandon_on_cancel=True))
        try:
            while True:
                item = await events.get()
                if item is _WINDOW_END:
                    return
                if isinstance(item, Exception):
                    msg = f"watch {RECORD_PLURAL}.{RECORD_GROUP} failed: {item}"
                    raise StoreError(msg) from item
                key = _event_key(item)
                if key is not None:
                    yield key
        finally:
            stream.stop()
            reader.cancel()


def _event_key(event: dict) -> NamespacedName | None:
    """Extract the record key from a watch event.  ``None`` for bookmarks."""
    event_type = event.get("type")
    obj = event.get("object") or {}
    if event_type == WatchEventType.ERROR:
        msg = f"watch error: {obj.get('message', obj)}"
        raise StoreError(msg)
    if event_type == WatchEventType.BOOKMARK:
        return None
    metadata = obj.get("metadata") or {}
    return NamespacedName(namespace=metadata["namespace"], name=metadata["name"])
