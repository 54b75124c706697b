"""Process root for app-operator.

Boot sequence: settings, log pipeline, cluster client, status cache (API
only), reconcile queue with its reconciler, trigger watches, then the HTTP
front door.  Teardown walks the same list backwards; a component that fails
to stop is logged and skipped so the remainder still get closed.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from appoperator.config import load_config
from appoperator.models.config import OperatorConfig
from appoperator.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from appoperator.cache.watch_cache import WatchCache
    from appoperator.controller.queue import ReconcileQueue
    from appoperator.controller.reconciler import Reconciler
    from appoperator.controller.triggers import BaseWatcher
    from appoperator.k8s.client import ClusterStateClient

_STOP_TIMEOUT_S = 15.0


class _ComponentError(Exception):
    """A required piece of the operator could not be brought up."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"{component} failed during startup: {cause}")
        self.component = component
        self.cause = cause


class OperatorApp:
    """Holds the operator's components and drives their start/stop ordering.

    Calling ``stop()`` before ``start()``, or twice, does nothing harmful.
    """

    def __init__(self, config: OperatorConfig | None = None) -> None:
        self.config: OperatorConfig | None = config

        self._api_client: Any = None
        self._client: ClusterStateClient | None = None
        self._cache: WatchCache | None = None
        self._reconciler: Reconciler | None = None
        self._queue: ReconcileQueue | None = None
        self._watchers: list[BaseWatcher] = []
        self._server: Any = None
        self._server_task: asyncio.Task[None] | None = None

        self._running = False
        self._stopped = asyncio.Event()
        self._log: FilteringBoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Bring-up
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bring every enabled component up.

        Raises _ComponentError naming the first component that failed.
        """
        if self.config is None:
            self.config = load_config()
        cfg = self.config

        setup_logging(cfg.log.level)
        self._log = get_logger("app")
        self._log.info("operator_boot", version=_operator_version(), namespace=cfg.watch_namespace or "*")

        await self._start_k8s_client()

        if cfg.api.enabled:
            await self._start_cache()

        if cfg.controller.enabled:
            await self._start_controller()
            await self._start_watchers()

        if cfg.api.enabled:
            await self._start_rest()

        self._running = True
        self._stopped.clear()
        self._log.info(
            "operator_ready",
            controller=cfg.controller.enabled,
            workers=cfg.controller.workers,
            api=cfg.api.enabled,
            api_port=cfg.api.port,
        )

    async def _start_k8s_client(self) -> None:
        """Load cluster credentials (service account first, kubeconfig second)."""
        assert self._log is not None
        assert self.config is not None
        try:
            from kubernetes_asyncio import client as kube_client
            from kubernetes_asyncio import config as kube_config

            from appoperator.k8s.client import ClusterStateClient

            try:
                kube_config.load_incluster_config()  # type: ignore[no-untyped-call]
                source = "service-account"
            except kube_config.ConfigException:
                await kube_config.load_kube_config()
                source = "kubeconfig"

            self._api_client = kube_client.ApiClient()
            self._client = ClusterStateClient(self._api_client, self.config.resource)
            self._log.info("cluster_credentials_loaded", source=source)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_cache(self) -> None:
        assert self.config is not None
        assert self._client is not None
        try:
            from appoperator.cache.watch_cache import WatchCache

            cache = WatchCache(self._client, namespace=self.config.watch_namespace)
            await cache.start()
            self._cache = cache
        except Exception as exc:
            raise _ComponentError("cache", exc) from exc

    async def _start_controller(self) -> None:
        """Assemble updater -> reconciler -> queue and start the queue workers."""
        assert self.config is not None
        assert self._client is not None
        try:
            from appoperator.controller.queue import ReconcileQueue
            from appoperator.controller.reconciler import Reconciler
            from appoperator.controller.status import StatusUpdater

            ctl = self.config.controller
            self._reconciler = Reconciler(
                self._client,
                StatusUpdater(
                    self._client,
                    max_attempts=ctl.status_max_attempts,
                    backoff_base_s=ctl.status_backoff_seconds,
                ),
                resource=self.config.resource,
            )
            queue = ReconcileQueue(
                self._reconciler.reconcile,
                workers=ctl.workers,
                resync_period_s=float(ctl.resync_period_seconds),
            )
            await queue.start()
            self._queue = queue
        except Exception as exc:
            raise _ComponentError("controller", exc) from exc

    async def _start_watchers(self) -> None:
        assert self.config is not None
        assert self._client is not None
        assert self._queue is not None
        try:
            from appoperator.controller.triggers import AppDeploymentWatcher, DeploymentWatcher

            ns = self.config.watch_namespace
            for watcher_cls in (AppDeploymentWatcher, DeploymentWatcher):
                watcher = watcher_cls(self._client, self._queue, namespace=ns)
                await watcher.start()
                self._watchers.append(watcher)
        except Exception as exc:
            raise _ComponentError("watchers", exc) from exc

    async def _start_rest(self) -> None:
        """Serve the HTTP front door on a background uvicorn task."""
        assert self._log is not None
        assert self.config is not None
        assert self._cache is not None
        try:
            import uvicorn

            from appoperator.api import create_app

            server = uvicorn.Server(
                uvicorn.Config(
                    app=create_app(client=self._client, cache=self._cache, namespace=self.config.namespace),
                    host="0.0.0.0",
                    port=self.config.api.port,
                    log_config=None,
                    access_log=False,
                )
            )
            self._server_task = asyncio.create_task(server.serve(), name="http-api")
            self._server = server
            self._log.info("http_api_listening", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop components newest-first."""
        if self._log is None:
            return
        log = self._log
        log.info("operator_stopping")
        self._running = False

        await self._stop_rest()

        while self._watchers:
            watcher = self._watchers.pop()
            await self._halt(type(watcher).__name__, watcher)
        await self._halt("reconcile_queue", self._queue)
        self._queue = None
        await self._halt("cache", self._cache)
        self._cache = None

        if self._api_client is not None:
            try:
                await self._api_client.close()
            except Exception as exc:
                log.debug("cluster_client_close_error", error=str(exc))
            self._api_client = None
            self._client = None

        self._stopped.set()
        log.info("operator_stopped")

    async def _stop_rest(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        task, self._server_task, self._server = self._server_task, None, None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=_STOP_TIMEOUT_S)
        except TimeoutError:
            assert self._log is not None
            self._log.warning("http_api_stop_timeout", timeout_s=_STOP_TIMEOUT_S)
        except Exception as exc:
            assert self._log is not None
            self._log.error("http_api_exited_with_error", error=str(exc))

    async def _halt(self, label: str, component: Any) -> None:
        if component is None:
            return
        assert self._log is not None
        try:
            await asyncio.wait_for(component.stop(), timeout=_STOP_TIMEOUT_S)
        except TimeoutError:
            self._log.warning("component_stop_timeout", component=label, timeout_s=_STOP_TIMEOUT_S)
        except Exception as exc:
            self._log.error("component_stop_error", component=label, error=str(exc))


def _operator_version() -> str:
    from appoperator import __version__

    return __version__


async def main() -> None:
    """Run the operator until SIGTERM or SIGINT arrives."""
    app = OperatorApp()
    loop = asyncio.get_running_loop()
    stopping: list[asyncio.Task[None]] = []

    def _on_signal() -> None:
        if not stopping:
            stopping.append(loop.create_task(app.stop(), name="operator-stop"))

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _on_signal)

    try:
        await app.start()
    except _ComponentError as exc:
        get_logger("app").critical("operator_boot_failed", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc

    try:
        await app.wait_stopped()
    finally:
        if app.running:
            await app.stop()


def run() -> None:
    """Console-script entrypoint."""
    asyncio.run(main())
