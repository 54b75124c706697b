"""Watch-fed cache of AppDeployment records, keyed by record name.

The cache serves the front door's status reads.  A background task keeps it
fresh from a watch stream:

    DISCONNECTED --list ok--> STREAMING --stream closed/failed--> DISCONNECTED
         ^                                                            |
         +------------------- reconnect (back-off on failure) --------+

    stop(): any state --> DRAINING --> DISCONNECTED

Every (re)connect lists all records and replaces the map wholesale, then
watches from the list's resourceVersion, so entries orphaned while the stream
was down are dropped.  Until that list succeeds the previous entries keep
being served.  Readers that miss should use :meth:`WatchCache.get_or_fetch`.

Each map operation holds a lock on its own; no lock spans an ``await``.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time

from appoperator.k8s.client import ClusterState
from appoperator.k8s.errors import NotFoundError, WatchExpiredError
from appoperator.models.resources import (
    AppDeployment,
    CacheState,
    ObjectIdentity,
    WatchEvent,
    WatchEventType,
)
from appoperator.observability.logging import get_logger
from appoperator.observability.metrics import (
    cache_entries,
    cache_events_total,
    cache_lookups_total,
    cache_reconnects_total,
    cache_relist_duration_seconds,
    cache_state,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BACKOFF_MIN_S: float = 1.0
_BACKOFF_MAX_S: float = 30.0
_BACKOFF_MULTIPLIER: float = 2.0


class WatchCache:
    """In-memory ``name -> AppDeployment`` map maintained from a watch stream.

    Args:
        client: Cluster-state access used for listing, watching and re-fetching.
        namespace: Namespace to watch; empty watches every namespace.
        backoff_min_s: First reconnect delay after a failed stream.
        backoff_max_s: Ceiling for the reconnect delay.

    Example::

        cache = WatchCache(client)
        await cache.start()
        record = cache.get("web")
        await cache.stop()
    """

    def __init__(
        self,
        client: ClusterState,
        namespace: str = "",
        backoff_min_s: float = _BACKOFF_MIN_S,
        backoff_max_s: float = _BACKOFF_MAX_S,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._log = get_logger("cache.watch")

        self._lock = threading.Lock()
        self._entries: dict[str, AppDeployment] = {}
        # remove() stamps the name with a fresh epoch; a fetch that started
        # before that stamp must not write the name back
        self._removal_epoch = 0
        self._removed_at: dict[str, int] = {}

        self._state = CacheState.DISCONNECTED
        self._resource_version: str = ""
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

        self._backoff_min_s = backoff_min_s
        self._backoff_max_s = backoff_max_s
        self._backoff_s = backoff_min_s
        self._emit_state_metric()

    # ------------------------------------------------------------------
    # Map access
    # ------------------------------------------------------------------

    def get(self, name: str) -> AppDeployment | None:
        with self._lock:
            record = self._entries.get(name)
        cache_lookups_total.labels(result="hit" if record is not None else "miss").inc()
        return record

    def set(self, name: str, record: AppDeployment) -> None:
        with self._lock:
            self._entries[name] = record
            size = len(self._entries)
        cache_entries.set(size)

    def remove(self, name: str) -> bool:
        """Drop ``name`` from the cache.  Returns True when an entry was removed."""
        with self._lock:
            removed = self._entries.pop(name, None) is not None
            self._removal_epoch += 1
            self._removed_at[name] = self._removal_epoch
            size = len(self._entries)
        cache_entries.set(size)
        return removed

    def snapshot(self) -> dict[str, AppDeployment]:
        with self._lock:
            return dict(self._entries)

    def _store_unless_removed(self, name: str, record: AppDeployment, since: int) -> bool:
        """Store a fetched record unless ``name`` was removed after epoch ``since``."""
        with self._lock:
            if self._removed_at.get(name, 0) > since:
                return False
            self._entries[name] = record
            size = len(self._entries)
        cache_entries.set(size)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get_or_fetch(self, namespace: str, name: str) -> AppDeployment | None:
        """Cached record for ``name``, else fetch it and populate the cache.

        Returns None when the record does not exist.  Other fetch errors
        propagate to the caller.
        """
        record = self.get(name)
        if record is not None:
            return record
        since = self._removal_epoch
        try:
            record = await self._client.get_record(ObjectIdentity(namespace, name))
        except NotFoundError:
            return None
        if not self._store_unless_removed(name, record, since):
            self._log.debug("cache_fill_skipped_removed", record=name)
            return None
        return record

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def resource_version(self) -> str:
        return self._resource_version

    async def start(self) -> None:
        """Start the stream consumer as a background task."""
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="watch-cache")
        self._log.info("watch_cache_started", namespace=self._namespace or "*")

    async def stop(self) -> None:
        """Cancel the stream consumer and wait for it to exit."""
        self._stopping = True
        self._set_state(CacheState.DRAINING)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._set_state(CacheState.DISCONNECTED)
        self._log.info("watch_cache_stopped", entries=len(self))

    # ------------------------------------------------------------------
    # Stream consumer
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._stopping:
            failed = False
            try:
                await self._relist()
                self._set_state(CacheState.STREAMING)
                async for event in self._client.watch_records(self._namespace, self._resource_version):
                    await self._apply(event)
                reason = "stream_closed"
                self._log.debug("watch_stream_closed", resource_version=self._resource_version)
            except asyncio.CancelledError:
                raise
            except WatchExpiredError:
                reason = "expired"
                self._log.info("watch_expired", resource_version=self._resource_version)
            except Exception as exc:
                failed = True
                reason = "error"
                self._log.warning("watch_stream_failed", error=str(exc), retry_in_s=self._backoff_s)

            if self._stopping:
                return
            self._set_state(CacheState.DISCONNECTED)
            cache_reconnects_total.labels(reason=reason).inc()
            if failed:
                await asyncio.sleep(self._backoff_s)
                self._backoff_s = min(self._backoff_s * _BACKOFF_MULTIPLIER, self._backoff_max_s)
            else:
                self._backoff_s = self._backoff_min_s
                await asyncio.sleep(0)

    async def _relist(self) -> None:
        start = time.monotonic()
        since = self._removal_epoch
        records, resource_version = await self._client.list_records(self._namespace)
        with self._lock:
            fresh = {r.name: r for r in records if self._removed_at.get(r.name, 0) <= since}
            dropped = len(self._entries.keys() - fresh.keys())
            self._entries = fresh
        self._resource_version = resource_version
        cache_entries.set(len(fresh))
        cache_relist_duration_seconds.observe(time.monotonic() - start)
        self._log.info(
            "watch_cache_relisted",
            entries=len(fresh),
            dropped=dropped,
            resource_version=resource_version,
        )

    async def _apply(self, event: WatchEvent) -> None:
        cache_events_total.labels(event_type=event.type.value).inc()
        if event.resource_version:
            self._resource_version = event.resource_version

        if event.type == WatchEventType.BOOKMARK:
            return
        if event.type == WatchEventType.ERROR:
            self._log.warning(
                "watch_error_event",
                code=event.raw.get("code"),
                reason=event.raw.get("reason"),
                message=event.raw.get("message"),
            )
            return
        if event.identity is None:
            return

        name = event.identity.name
        if event.type == WatchEventType.DELETED:
            self.remove(name)
            return

        # Watch payloads can be partial; the cache stores the full record
        since = self._removal_epoch
        try:
            record = await self._client.get_record(event.identity)
        except NotFoundError:
            self.remove(name)
            return
        except Exception as exc:
            self._log.warning("cache_refetch_failed", record=str(event.identity), error=str(exc))
            record = AppDeployment.from_dict(event.raw)
        if not self._store_unless_removed(name, record, since):
            self._log.debug("cache_refetch_discarded", record=str(event.identity))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: CacheState) -> None:
        if state == self._state:
            return
        self._log.debug("watch_cache_state", old=self._state.value, new=state.value)
        self._state = state
        self._emit_state_metric()

    def _emit_state_metric(self) -> None:
        for candidate in CacheState:
            cache_state.labels(state=candidate.value).set(1 if candidate == self._state else 0)
