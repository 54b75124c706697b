"""Watchers that turn cluster changes into reconcile requests.

Each watcher lists its resource once, then follows a watch stream from the
list's resourceVersion.  A stream that ends cleanly is reopened at once from
the last seen version; a 410 Gone drops the version and forces a relist;
any other failure waits out a doubling delay capped at one minute.

:class:`AppDeploymentWatcher` enqueues records themselves,
:class:`DeploymentWatcher` enqueues the AppDeployment owning a Deployment.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from appoperator.controller.queue import ReconcileQueue
from appoperator.k8s.client import ClusterState
from appoperator.k8s.errors import WatchExpiredError
from appoperator.models.resources import (
    APP_DEPLOYMENT_KIND,
    Deployment,
    ObjectIdentity,
    WatchEvent,
    WatchEventType,
)
from appoperator.observability.logging import get_logger
from appoperator.observability.metrics import (
    watcher_backoff_seconds,
    watcher_events_total,
    watcher_reconnects_total,
)

_RETRY_FIRST_S = 1.0
_RETRY_CAP_S = 60.0


class BaseWatcher(ABC):
    """List-then-watch loop feeding a :class:`ReconcileQueue`.

    Subclasses choose the stream (:meth:`_stream`), seed the queue from a
    full listing (:meth:`_relist`) and map single events to queue keys
    (:meth:`_handle_event`).
    """

    def __init__(self, client: ClusterState, queue: ReconcileQueue, namespace: str = "", name: str = "base") -> None:
        self._client = client
        self._queue = queue
        self._namespace = namespace
        self._name = name
        self._log = get_logger("watcher", watcher=name)

        self._resource_version = ""
        self._active = False
        self._loop_task: asyncio.Task[None] | None = None
        self._backoff_s = _RETRY_FIRST_S

    @property
    def resource_version(self) -> str:
        return self._resource_version

    async def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._loop_task = asyncio.create_task(self._follow(), name=f"{self._name}-watch")
        self._log.info("watch_loop_started", namespace=self._namespace or "*")

    async def stop(self) -> None:
        self._active = False
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._log.info("watch_loop_stopped", resource_version=self._resource_version)

    @abstractmethod
    def _stream(self, resource_version: str) -> AsyncIterator[WatchEvent]:
        """Open the watch stream, resuming from ``resource_version``."""

    @abstractmethod
    async def _relist(self) -> str:
        """List the watched objects, enqueue what they imply, return the list resourceVersion."""

    @abstractmethod
    async def _handle_event(self, event: WatchEvent) -> None:
        """Process a single ADDED, MODIFIED or DELETED event."""

    async def _follow(self) -> None:
        while self._active:
            try:
                await self._consume()
            except asyncio.CancelledError:
                return
            except WatchExpiredError:
                self._log.warning("watch_expired_relisting", stale_version=self._resource_version)
                watcher_reconnects_total.labels(watcher=self._name, reason="410").inc()
                self._resource_version = ""
            except Exception as exc:
                if not self._active:
                    return
                self._log.error("watch_failed", error=str(exc), exc_info=True)
                watcher_reconnects_total.labels(watcher=self._name, reason="error").inc()
                await self._pause()

    async def _consume(self) -> None:
        """Relist when there is no version to resume from, then drain one stream."""
        if not self._resource_version:
            self._resource_version = await self._relist()
            self._log.info("relisted", resource_version=self._resource_version)

        async for event in self._stream(self._resource_version):
            if not self._active:
                return
            if event.resource_version:
                self._resource_version = event.resource_version
            if event.type == WatchEventType.BOOKMARK:
                continue

            watcher_events_total.labels(watcher=self._name, event_type=event.type.value).inc()
            if event.type == WatchEventType.ERROR:
                self._log.warning("watch_error_event", message=event.raw.get("message"))
                continue
            await self._handle_event(event)

        # clean close: reset the retry delay and reopen from the same version
        self._backoff_s = _RETRY_FIRST_S
        watcher_reconnects_total.labels(watcher=self._name, reason="stream_end").inc()
        self._log.debug("watch_stream_closed", resource_version=self._resource_version)
        await asyncio.sleep(0)

    async def _pause(self) -> None:
        delay = self._backoff_s
        watcher_backoff_seconds.labels(watcher=self._name).observe(delay)
        self._log.debug("watch_retry_wait", delay_s=delay)
        await asyncio.sleep(delay)
        self._backoff_s = min(delay * 2, _RETRY_CAP_S)


class AppDeploymentWatcher(BaseWatcher):
    """Enqueues a record whenever it is added, modified or deleted."""

    def __init__(self, client: ClusterState, queue: ReconcileQueue, namespace: str = "") -> None:
        super().__init__(client, queue, namespace=namespace, name="appdeployment")

    def _stream(self, resource_version: str) -> AsyncIterator[WatchEvent]:
        return self._client.watch_records(self._namespace, resource_version)

    async def _relist(self) -> str:
        records, resource_version = await self._client.list_records(self._namespace)
        for record in records:
            self._queue.track(record.identity)
            self._queue.enqueue(record.identity)
        return resource_version

    async def _handle_event(self, event: WatchEvent) -> None:
        if event.identity is None:
            return
        if event.type == WatchEventType.DELETED:
            self._queue.forget(event.identity)
        else:
            self._queue.track(event.identity)
        self._queue.enqueue(event.identity)


class DeploymentWatcher(BaseWatcher):
    """Enqueues the owning AppDeployment whenever a managed Deployment changes."""

    def __init__(self, client: ClusterState, queue: ReconcileQueue, namespace: str = "") -> None:
        super().__init__(client, queue, namespace=namespace, name="deployment")

    def _stream(self, resource_version: str) -> AsyncIterator[WatchEvent]:
        return self._client.watch_workloads(self._namespace, resource_version)

    async def _relist(self) -> str:
        workloads, resource_version = await self._client.list_workloads(self._namespace)
        for workload in workloads:
            owner = owner_identity(workload)
            if owner is not None:
                self._queue.enqueue(owner)
        return resource_version

    async def _handle_event(self, event: WatchEvent) -> None:
        owner = owner_identity(Deployment.from_dict(event.raw))
        if owner is None:
            return
        self._log.debug("owned_workload_changed", workload=str(event.identity), record=str(owner))
        self._queue.enqueue(owner)


def owner_identity(workload: Deployment) -> ObjectIdentity | None:
    """Identity of the AppDeployment controlling ``workload``, if any."""
    owner = workload.controller_owner()
    if owner is None or owner.kind != APP_DEPLOYMENT_KIND or not owner.name:
        return None
    return ObjectIdentity(workload.namespace, owner.name)
