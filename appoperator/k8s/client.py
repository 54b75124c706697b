"""Async cluster-state client for AppDeployment records and their Deployments.

Wraps kubernetes_asyncio's ``CustomObjectsApi`` (records) and ``AppsV1Api``
(workloads) behind a small surface that speaks the dataclasses in
:mod:`appoperator.models.resources` and raises the errors defined in
:mod:`appoperator.k8s.errors`.

Watch streams are exposed as async iterators of :class:`WatchEvent`.  Each
iterator wraps one server-side watch; it ends when the server closes the
stream and raises :class:`WatchExpiredError` when the resourceVersion it was
opened from has been compacted away.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Coroutine
from typing import Any, Protocol

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import watch

from appoperator.k8s.errors import WatchExpiredError, translate_exception
from appoperator.models.config import ResourceConfig
from appoperator.models.resources import (
    AppDeployment,
    Deployment,
    ObjectIdentity,
    WatchEvent,
    WatchEventType,
)
from appoperator.observability.logging import get_logger

_log = get_logger("k8s_client")

_REQUEST_TIMEOUT_S: float = 30.0
_WATCH_TIMEOUT_S: int = 300


class ClusterState(Protocol):
    """The operations the controller, cache and front door need from the cluster."""

    async def get_record(self, identity: ObjectIdentity) -> AppDeployment: ...

    async def list_records(self, namespace: str = "") -> tuple[list[AppDeployment], str]: ...

    async def create_record(self, record: AppDeployment) -> AppDeployment: ...

    async def update_record_status(self, record: AppDeployment) -> AppDeployment: ...

    async def delete_record(self, identity: ObjectIdentity) -> None: ...

    def watch_records(self, namespace: str = "", resource_version: str = "") -> AsyncIterator[WatchEvent]: ...

    async def get_workload(self, identity: ObjectIdentity) -> Deployment: ...

    async def list_workloads(self, namespace: str = "") -> tuple[list[Deployment], str]: ...

    async def create_workload(self, workload: Deployment) -> Deployment: ...

    async def update_workload(self, workload: Deployment) -> Deployment: ...

    def watch_workloads(self, namespace: str = "", resource_version: str = "") -> AsyncIterator[WatchEvent]: ...


class ClusterStateClient:
    """kubernetes_asyncio-backed implementation of :class:`ClusterState`.

    Args:
        api_client: A configured ``kubernetes_asyncio.client.ApiClient``.
        resource: Group/version/plural of the AppDeployment custom resource.
        request_timeout_s: Per-request timeout for non-watch calls.
        watch_timeout_s: Server-side timeout after which a watch closes cleanly.
    """

    def __init__(
        self,
        api_client: Any,
        resource: ResourceConfig,
        request_timeout_s: float = _REQUEST_TIMEOUT_S,
        watch_timeout_s: int = _WATCH_TIMEOUT_S,
    ) -> None:
        self._api_client = api_client
        self._resource = resource
        self._custom = k8s_client.CustomObjectsApi(api_client)
        self._apps = k8s_client.AppsV1Api(api_client)
        self._request_timeout_s = request_timeout_s
        self._watch_timeout_s = watch_timeout_s

    @property
    def resource(self) -> ResourceConfig:
        return self._resource

    # ------------------------------------------------------------------
    # AppDeployment records
    # ------------------------------------------------------------------

    async def get_record(self, identity: ObjectIdentity) -> AppDeployment:
        r = self._resource
        raw = await self._call(
            f"appdeployment {identity}",
            self._custom.get_namespaced_custom_object,
            r.group,
            r.version,
            identity.namespace,
            r.plural,
            identity.name,
        )
        return AppDeployment.from_dict(self._to_dict(raw))

    async def list_records(self, namespace: str = "") -> tuple[list[AppDeployment], str]:
        """Return every record (in ``namespace``, or cluster-wide) plus the list resourceVersion."""
        r = self._resource
        if namespace:
            raw = await self._call(
                "appdeployments",
                self._custom.list_namespaced_custom_object,
                r.group,
                r.version,
                namespace,
                r.plural,
            )
        else:
            raw = await self._call(
                "appdeployments", self._custom.list_cluster_custom_object, r.group, r.version, r.plural
            )
        data = self._to_dict(raw)
        items = [AppDeployment.from_dict(item) for item in data.get("items") or [] if isinstance(item, dict)]
        return items, _list_resource_version(data)

    async def create_record(self, record: AppDeployment) -> AppDeployment:
        r = self._resource
        raw = await self._call(
            f"appdeployment {record.identity}",
            self._custom.create_namespaced_custom_object,
            r.group,
            r.version,
            record.namespace,
            r.plural,
            record.to_dict(r.api_version),
        )
        return AppDeployment.from_dict(self._to_dict(raw))

    async def update_record_status(self, record: AppDeployment) -> AppDeployment:
        """Write ``record.status`` through the status subresource.

        The record's resourceVersion is sent along, so a stale copy fails
        with :class:`ConflictError` rather than clobbering a newer write.
        """
        r = self._resource
        raw = await self._call(
            f"appdeployment {record.identity} status",
            self._custom.replace_namespaced_custom_object_status,
            r.group,
            r.version,
            record.namespace,
            r.plural,
            record.name,
            record.to_dict(r.api_version),
        )
        return AppDeployment.from_dict(self._to_dict(raw))

    async def delete_record(self, identity: ObjectIdentity) -> None:
        r = self._resource
        await self._call(
            f"appdeployment {identity}",
            self._custom.delete_namespaced_custom_object,
            r.group,
            r.version,
            identity.namespace,
            r.plural,
            identity.name,
        )

    def watch_records(self, namespace: str = "", resource_version: str = "") -> AsyncIterator[WatchEvent]:
        r = self._resource
        if namespace:
            return self._stream(
                "appdeployments",
                resource_version,
                self._custom.list_namespaced_custom_object,
                r.group,
                r.version,
                namespace,
                r.plural,
            )
        return self._stream(
            "appdeployments",
            resource_version,
            self._custom.list_cluster_custom_object,
            r.group,
            r.version,
            r.plural,
        )

    # ------------------------------------------------------------------
    # Deployments (managed workloads)
    # ------------------------------------------------------------------

    async def get_workload(self, identity: ObjectIdentity) -> Deployment:
        raw = await self._call(
            f"deployment {identity}",
            self._apps.read_namespaced_deployment,
            identity.name,
            identity.namespace,
        )
        return Deployment.from_dict(self._to_dict(raw))

    async def list_workloads(self, namespace: str = "") -> tuple[list[Deployment], str]:
        if namespace:
            raw = await self._call("deployments", self._apps.list_namespaced_deployment, namespace)
        else:
            raw = await self._call("deployments", self._apps.list_deployment_for_all_namespaces)
        data = self._to_dict(raw)
        items = [Deployment.from_dict(item) for item in data.get("items") or [] if isinstance(item, dict)]
        return items, _list_resource_version(data)

    async def create_workload(self, workload: Deployment) -> Deployment:
        raw = await self._call(
            f"deployment {workload.identity}",
            self._apps.create_namespaced_deployment,
            workload.namespace,
            workload.to_dict(),
        )
        return Deployment.from_dict(self._to_dict(raw))

    async def update_workload(self, workload: Deployment) -> Deployment:
        """Patch only the drift-checked fields of ``workload`` onto the live object.

        A dict body makes kubernetes_asyncio send
        ``application/strategic-merge-patch+json``.
        """
        raw = await self._call(
            f"deployment {workload.identity}",
            self._apps.patch_namespaced_deployment,
            workload.name,
            workload.namespace,
            workload.drift_patch(),
        )
        return Deployment.from_dict(self._to_dict(raw))

    def watch_workloads(self, namespace: str = "", resource_version: str = "") -> AsyncIterator[WatchEvent]:
        if namespace:
            return self._stream("deployments", resource_version, self._apps.list_namespaced_deployment, namespace)
        return self._stream("deployments", resource_version, self._apps.list_deployment_for_all_namespaces)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(self, what: str, func: Callable[..., Coroutine[Any, Any, Any]], *args: Any) -> Any:
        try:
            return await func(*args, _request_timeout=self._request_timeout_s)
        except Exception as exc:
            translated = translate_exception(exc, what)
            if translated is exc:
                raise
            raise translated from exc

    async def _stream(
        self,
        what: str,
        resource_version: str,
        func: Callable[..., Coroutine[Any, Any, Any]],
        *args: Any,
    ) -> AsyncIterator[WatchEvent]:
        kwargs: dict[str, Any] = {
            "allow_watch_bookmarks": True,
            "timeout_seconds": self._watch_timeout_s,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version

        w = watch.Watch()
        try:
            async for raw_event in w.stream(func, *args, **kwargs):
                event = self._to_watch_event(raw_event)
                if event.type == WatchEventType.ERROR and _status_code(event.raw) == 410:
                    raise WatchExpiredError(f"watch on {what} expired at resourceVersion {resource_version}")
                yield event
        except WatchExpiredError:
            raise
        except Exception as exc:
            translated = translate_exception(exc, what)
            if translated is exc:
                raise
            raise translated from exc
        finally:
            await w.close()

    def _to_watch_event(self, raw_event: dict[str, Any]) -> WatchEvent:
        try:
            event_type = WatchEventType(str(raw_event.get("type", "")))
        except ValueError:
            _log.warning("watch_unknown_event_type", event_type=raw_event.get("type"))
            event_type = WatchEventType.ERROR

        raw = raw_event.get("raw_object")
        if not isinstance(raw, dict):
            raw = self._to_dict(raw_event.get("object"))

        metadata = raw.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        identity = None
        if event_type not in (WatchEventType.ERROR, WatchEventType.BOOKMARK):
            identity = ObjectIdentity.from_metadata(metadata)
        return WatchEvent(
            type=event_type,
            identity=identity,
            raw=raw,
            resource_version=str(metadata.get("resourceVersion") or ""),
        )

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        """Normalise a generated model object (or a plain dict) into camelCase JSON."""
        if isinstance(obj, dict):
            return obj
        if obj is None:
            return {}
        data = self._api_client.sanitize_for_serialization(obj)
        return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _list_resource_version(data: dict[str, Any]) -> str:
    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        return ""
    return str(metadata.get("resourceVersion") or "")


def _status_code(raw: dict[str, Any]) -> int:
    try:
        return int(raw.get("code") or 0)
    except (TypeError, ValueError):
        return 0
