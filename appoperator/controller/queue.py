"""Keyed async work queue that drives reconcile passes.

Guarantees per record identity:

- Deduplication: an identity waits in the queue at most once.
- At most one pass in flight: an identity enqueued while a worker is
  processing it is marked dirty and queued again once that pass ends.
- Requeue: a pass returning ``requeue=True`` runs again after ``base_delay_s``.
- Error back-off: a pass that raises runs again after
  ``base_delay_s * 2**(failures - 1)``, capped at ``max_delay_s``.  A
  successful pass resets the failure count.
- Resync: every ``resync_period_s`` each tracked identity is enqueued.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from appoperator.models.resources import ObjectIdentity
from appoperator.observability.logging import get_logger
from appoperator.observability.metrics import queue_depth, queue_requeues_total

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from appoperator.controller.reconciler import ReconcileResult

_logger = get_logger("reconcile_queue")

_DEFAULT_WORKERS: int = 2
_DEFAULT_RESYNC_PERIOD_S: float = 300.0
_DEFAULT_BASE_DELAY_S: float = 1.0
_DEFAULT_MAX_DELAY_S: float = 300.0


class ReconcileQueue:
    """Deduplicating, per-key serialised queue of reconcile passes.

    reconcile_fn: async callable (identity) -> ReconcileResult; raises on failure.
    workers: number of passes that may run concurrently (for distinct keys).
    """

    def __init__(
        self,
        reconcile_fn: Callable[[ObjectIdentity], Awaitable[ReconcileResult]],
        workers: int = _DEFAULT_WORKERS,
        resync_period_s: float = _DEFAULT_RESYNC_PERIOD_S,
        base_delay_s: float = _DEFAULT_BASE_DELAY_S,
        max_delay_s: float = _DEFAULT_MAX_DELAY_S,
    ) -> None:
        self._reconcile_fn = reconcile_fn
        self._num_workers = max(1, workers)
        self._resync_period_s = resync_period_s
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s

        self._queue: asyncio.Queue[ObjectIdentity] = asyncio.Queue()
        self._queued: set[ObjectIdentity] = set()
        self._processing: set[ObjectIdentity] = set()
        self._dirty: set[ObjectIdentity] = set()
        self._failures: dict[ObjectIdentity, int] = {}
        self._tracked: set[ObjectIdentity] = set()
        self._delayed: dict[ObjectIdentity, asyncio.TimerHandle] = {}

        self._workers: list[asyncio.Task[None]] = []
        self._resync_task: asyncio.Task[None] | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile_worker_{i}") for i in range(self._num_workers)
        ]
        self._resync_task = asyncio.create_task(self._resync_loop(), name="reconcile_resync")
        _logger.info("reconcile_queue_started", workers=self._num_workers, resync_period_s=self._resync_period_s)

    async def stop(self) -> None:
        """Cancel workers, the resync loop and pending delayed enqueues.  Safe before start()."""
        self._running = False
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

        tasks = list(self._workers)
        if self._resync_task is not None:
            tasks.append(self._resync_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        self._resync_task = None
        _logger.info("reconcile_queue_stopped")

    async def join(self) -> None:
        """Wait until every identity currently queued has been processed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(self, identity: ObjectIdentity, delay: float = 0.0) -> None:
        """Schedule a pass for ``identity``, now or after ``delay`` seconds."""
        if delay <= 0:
            self._add(identity)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._delayed.get(identity)
        if existing is not None:
            if existing.when() <= deadline:
                return
            existing.cancel()
        self._delayed[identity] = loop.call_at(deadline, self._fire_delayed, identity)

    def track(self, identity: ObjectIdentity) -> None:
        """Include ``identity`` in periodic resyncs."""
        self._tracked.add(identity)

    def forget(self, identity: ObjectIdentity) -> None:
        """Stop resyncing ``identity`` and drop its back-off state."""
        self._tracked.discard(identity)
        self._failures.pop(identity, None)

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def is_tracked(self, identity: ObjectIdentity) -> bool:
        return identity in self._tracked

    def failures(self, identity: ObjectIdentity) -> int:
        return self._failures.get(identity, 0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fire_delayed(self, identity: ObjectIdentity) -> None:
        self._delayed.pop(identity, None)
        self._add(identity)

    def _add(self, identity: ObjectIdentity) -> None:
        if identity in self._processing:
            self._dirty.add(identity)
            return
        if identity in self._queued:
            return
        self._queued.add(identity)
        self._queue.put_nowait(identity)
        queue_depth.set(self._queue.qsize())
        _logger.debug("identity_enqueued", record=str(identity), queue_depth=self._queue.qsize())

    def _backoff_delay(self, identity: ObjectIdentity) -> float:
        failures = self._failures.get(identity, 0) + 1
        self._failures[identity] = failures
        return min(self._base_delay_s * (2 ** (failures - 1)), self._max_delay_s)

    async def _worker(self, worker_id: int) -> None:
        """Worker coroutine: pull identities and run one pass each."""
        _logger.debug("worker_started", worker_id=worker_id)
        while True:
            identity = await self._queue.get()
            self._queued.discard(identity)
            self._processing.add(identity)
            queue_depth.set(self._queue.qsize())

            retry_delay: float | None = None
            reason = ""
            try:
                result = await self._reconcile_fn(identity)
            except Exception as exc:
                retry_delay = self._backoff_delay(identity)
                reason = "error"
                _logger.warning(
                    "reconcile_failed",
                    worker_id=worker_id,
                    record=str(identity),
                    error=str(exc),
                    error_type=type(exc).__name__,
                    retry_in_s=retry_delay,
                )
            else:
                self._failures.pop(identity, None)
                if result.requeue:
                    retry_delay = self._base_delay_s
                    reason = "requeue"
            finally:
                self._processing.discard(identity)
                self._queue.task_done()

            if identity in self._dirty:
                self._dirty.discard(identity)
                queue_requeues_total.labels(reason="dirty").inc()
                self._add(identity)
            if retry_delay is not None:
                queue_requeues_total.labels(reason=reason).inc()
                self.enqueue(identity, retry_delay)

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._resync_period_s)
            tracked = list(self._tracked)
            _logger.debug("resync", records=len(tracked))
            for identity in tracked:
                queue_requeues_total.labels(reason="resync").inc()
                self._add(identity)
