"""Controller manager: wires store events to work queues and runs the loops.

Catalogs and services each get their own queue and pool of workers. Beside
the workers run a periodic full resync, the expiry monitor and, when
configured, the ManageIQ service mirror. Everything stops on ``shutdown()``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime

from .catalog import CatalogReconciler
from .conditions import Result
from .config import Config
from .expiry import ExpiryMonitor, utcnow
from .mirror import MirrorSync
from .reconciler import ServiceReconciler
from .scope import GatewayFactory
from .store import KIND_CATALOG, KIND_SERVICE, EventType, ResourceEvent, ResourceStore
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

Reconcile = Callable[[str, str], Awaitable[Result]]


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


class Manager:
    """Runs the catalog and service controllers until shutdown.

    Args:
        store: Resource store; the manager subscribes to its events.
        gateway_factory: Builds per-invocation client bundles.
        config: Controller configuration.
        mirror: Optional ManageIQ service mirror.
        clock: Source of the current UTC time.
        rng: Random source for listener port allocation.
    """

    def __init__(
        self,
        store: ResourceStore,
        gateway_factory: GatewayFactory,
        config: Config,
        mirror: MirrorSync | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._mirror = mirror

        self.catalog_queue = WorkQueue("catalogs")
        self.service_queue = WorkQueue("services")

        self.catalog_reconciler = CatalogReconciler(
            store, gateway_factory, config, on_readiness_change=self._enqueue_service
        )
        self.service_reconciler = ServiceReconciler(store, gateway_factory, config, clock, rng)
        self.expiry_monitor = ExpiryMonitor(store, gateway_factory, config, clock)

        self._shutdown_event = asyncio.Event()
        store.subscribe(self._on_event)

    async def run(self) -> None:
        """Run until ``shutdown()`` is called."""
        workers = self._config.max_concurrent_reconciles
        logger.info(
            "Starting controller manager",
            extra={
                "namespace": self._config.namespace,
                "workers_per_kind": workers,
                "resync_interval_seconds": self._config.reconcile_interval_seconds,
                "ingress_enabled": self._config.ingress_enabled,
                "mirror_enabled": self._mirror is not None,
            },
        )

        tasks = [
            asyncio.create_task(
                self._worker(self.catalog_queue, self.catalog_reconciler.reconcile, KIND_CATALOG),
                name=f"catalog-worker-{i}",
            )
            for i in range(workers)
        ]
        tasks += [
            asyncio.create_task(
                self._worker(self.service_queue, self.service_reconciler.reconcile, KIND_SERVICE),
                name=f"service-worker-{i}",
            )
            for i in range(workers)
        ]
        tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))
        tasks.append(
            asyncio.create_task(self.expiry_monitor.run(self._shutdown_event), name="expiry")
        )
        if self._mirror is not None:
            tasks.append(asyncio.create_task(self._mirror.run(self._shutdown_event), name="mirror"))

        try:
            await self._shutdown_event.wait()
        finally:
            self.catalog_queue.shutdown()
            self.service_queue.shutdown()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for task, result in zip(tasks, results, strict=True):
                if isinstance(result, Exception):
                    logger.error(
                        "Controller task failed",
                        extra={"task": task.get_name(), "error": str(result)},
                    )

        logger.info("Controller manager shutdown complete")

    def shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def enqueue_all(self) -> None:
        for catalog in self._store.list_catalogs(self._config.namespace):
            self.catalog_queue.add(catalog.key)
        for service in self._store.list_services(self._config.namespace):
            self.service_queue.add(service.key)

    def _enqueue_service(self, namespace: str, name: str) -> None:
        self.service_queue.add(f"{namespace}/{name}")

    def _on_event(self, event: ResourceEvent) -> None:
        if event.namespace != self._config.namespace:
            return
        key = f"{event.namespace}/{event.name}"

        if event.kind == KIND_SERVICE:
            self.service_queue.add(key)
            return

        self.catalog_queue.add(key)
        # Retirement and removal of a catalog change what its services may do
        if event.type != EventType.ADDED:
            for service in self._store.list_services(event.namespace):
                if service.spec.catalog.name == event.name:
                    self.service_queue.add(service.key)

    async def _worker(self, queue: WorkQueue, reconcile: Reconcile, kind: str) -> None:
        while True:
            key = await queue.get()
            if key is None:
                return

            namespace, name = split_key(key)
            try:
                result = await reconcile(namespace, name)
            except Exception as e:
                logger.exception(
                    "Reconcile raised, retrying later",
                    extra={"kind": kind, "key": key, "error": str(e)},
                )
                result = Result.after(self._config.retry_delay_seconds)
            finally:
                queue.done(key)

            if result.requeue_after:
                queue.add_after(key, result.requeue_after)
            elif result.requeue:
                queue.add(key)

    async def _resync_loop(self) -> None:
        while not self._shutdown_event.is_set():
            self.enqueue_all()
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass
