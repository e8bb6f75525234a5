"""Service reconciler: drives one Service from intent to running infrastructure.

Each invocation works on a single resource identity:

1. Deletion lifecycle first. A service pending deletion is torn down
   (ingress, then VM) and its finalizer removed only when teardown fully
   succeeded. An active service without the finalizer gets it.
2. Expiry, then catalog gates. A service that is neither CREATED nor
   EXPIRED does nothing while its catalog is retired or not ready.
3. The business state machine:
   NEW -> IN_PROGRESS -> CREATED | FAILED, EXPIRED past expiry, ERROR on
   catalog trouble or a rejected request.
4. Provision -> resolve network -> orchestrate ingress, persisting status
   after every step.

Steps report ok / retryable / terminal. This module alone turns that into
scheduling: retryable requeues after a bounded delay, terminal records the
failure and waits for the next trigger. A stale version token on any write
aborts the invocation and requeues it immediately.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from .conditions import Condition, Result, StepResult
from .config import Config
from .expiry import has_infrastructure, mark_expired, teardown_service, utcnow
from .ingress import IngressOrchestrator
from .models import SERVICE_FINALIZER, Catalog, Lifecycle, Service, ServiceState
from .network import NetworkResolver
from .provisioner import VMProvisioner
from .scope import GatewayFactory, ServiceScope
from .store import ConflictError, NotFoundError, ResourceStore
from .validation import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGE_CATALOG_RETIRED = "catalog is retired"


@dataclass
class ReconcileRecord:
    """What one invocation did, for logging."""

    service: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    state: str = ""
    result: Result = field(default_factory=Result)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


class ServiceReconciler:
    """Reconciles Service resources against their catalogs.

    Args:
        store: Resource store.
        gateway_factory: Builds the per-invocation client bundle.
        config: Controller configuration.
        clock: Source of the current UTC time.
        rng: Random source for listener port allocation.
    """

    def __init__(
        self,
        store: ResourceStore,
        gateway_factory: GatewayFactory,
        config: Config,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._gateway_factory = gateway_factory
        self._config = config
        self._clock = clock
        self._rng = rng

    async def reconcile(self, namespace: str, name: str) -> Result:
        record = ReconcileRecord(service=f"{namespace}/{name}")
        try:
            service = self._store.get_service(namespace, name)
        except NotFoundError:
            return Result.done()

        try:
            record.result = await self._reconcile(service)
        except ConflictError as e:
            logger.info(
                "Service changed during reconcile, re-reading",
                extra={"service": record.service, "error": str(e)},
            )
            record.result = Result.now()
        except Exception as e:
            record.error = e
            raise
        finally:
            record.end_time = datetime.now(UTC)
            record.state = service.status.state.value if service.status.state else ""
            self._log_record(record)

        return record.result

    async def _reconcile(self, service: Service) -> Result:
        if service.lifecycle == Lifecycle.PENDING_DELETION:
            return await self._reconcile_delete(service)

        if service.add_finalizer(SERVICE_FINALIZER):
            self._update(service)

        try:
            catalog = self._store.get_catalog(service.namespace, service.spec.catalog.name)
        except NotFoundError:
            return self._set_error(service, f"catalog {service.spec.catalog.name} not found")

        if service.set_owner(catalog, catalog.kind):
            self._update(service)

        status = service.status
        if service.is_expired(self._clock()) and status.state != ServiceState.EXPIRED:
            mark_expired(status)
            self._persist(service)
            logger.info("Service expired", extra={"service": service.key})
            return Result.now()

        if status.state not in (ServiceState.CREATED, ServiceState.EXPIRED):
            if catalog.spec.retired:
                return self._set_error(service, MESSAGE_CATALOG_RETIRED)
            if not catalog.status.ready:
                return self._set_error(
                    service, f"catalog {service.spec.catalog.name} not in ready state"
                )

        if status.state is None:
            status.state = ServiceState.NEW
            self._persist(service)
            return Result.now()

        if status.state == ServiceState.EXPIRED:
            if not has_infrastructure(status):
                return Result.done()
            return await self._with_scope(service, catalog, self._teardown_expired)

        if status.state == ServiceState.FAILED:
            logger.info(
                "Service failed, waiting for owner action",
                extra={"service": service.key, "message": status.message},
            )
            return Result.done()

        return await self._with_scope(service, catalog, self._converge)

    async def _converge(self, scope: ServiceScope) -> Result:
        service = scope.service
        status = service.status

        if status.state in (ServiceState.NEW, ServiceState.ERROR):
            status.state = ServiceState.IN_PROGRESS
            status.message = ""
            self._persist(service)

        steps: list[tuple[str, Callable[[], Awaitable[StepResult]]]] = [
            ("provision", VMProvisioner(scope, self._config.in_progress_requeue_seconds).ensure),
            ("network", NetworkResolver(scope).resolve),
            ("ingress", IngressOrchestrator(scope, self._rng).ensure),
        ]
        for step_name, step in steps:
            outcome = await step()
            if not outcome.ok:
                return self._schedule(service, step_name, outcome)
            self._persist(service)

        return Result.done()

    async def _teardown_expired(self, scope: ServiceScope) -> Result:
        outcome = await teardown_service(scope)
        if not outcome.ok:
            scope.service.status.message = f"error cleaning up expired service: {outcome.message}"
            self._persist(scope.service)
            return Result.after(self._config.retry_delay_seconds)
        self._persist(scope.service)
        return Result.done()

    async def _reconcile_delete(self, service: Service) -> Result:
        if not service.has_finalizer(SERVICE_FINALIZER):
            return Result.done()

        try:
            catalog: Catalog | None = self._store.get_catalog(
                service.namespace, service.spec.catalog.name
            )
        except NotFoundError:
            catalog = None

        if has_infrastructure(service.status):
            if catalog is None:
                service.status.message = (
                    f"error deleting the service: catalog {service.spec.catalog.name} not found"
                )
                self._persist(service)
                return Result.after(self._config.retry_delay_seconds)

            result = await self._with_scope(service, catalog, self._teardown_for_deletion)
            if result is not None:
                return result

        service.remove_finalizer(SERVICE_FINALIZER)
        self._store.update(service)
        logger.info("Service finalizer removed", extra={"service": service.key})
        return Result.done()

    async def _teardown_for_deletion(self, scope: ServiceScope) -> Result | None:
        """Returns a retry result on failure, None once everything is gone."""
        outcome = await teardown_service(scope)
        if not outcome.ok:
            scope.service.status.message = f"error deleting the service: {outcome.message}"
            self._persist(scope.service)
            logger.warning(
                "Teardown failed, keeping finalizer",
                extra={"service": scope.service.key, "reason": outcome.message},
            )
            return Result.after(self._config.retry_delay_seconds)
        self._persist(scope.service)
        return None

    async def _with_scope(
        self,
        service: Service,
        catalog: Catalog,
        action: Callable[[ServiceScope], Awaitable[T]],
    ) -> T | Result:
        try:
            gateways = self._gateway_factory.for_catalog(catalog)
        except ValidationError as e:
            if service.lifecycle == Lifecycle.PENDING_DELETION:
                service.status.message = f"error deleting the service: {e}"
                self._persist(service)
                return Result.after(self._config.retry_delay_seconds)
            return self._set_error(service, str(e))

        with gateways:
            scope = ServiceScope(
                service=service,
                catalog=catalog,
                gateways=gateways,
                timeout_seconds=self._config.api_timeout_seconds,
            )
            return await action(scope)

    def _schedule(self, service: Service, step: str, outcome: StepResult) -> Result:
        status = service.status

        if outcome.condition == Condition.RETRYABLE:
            status.message = outcome.message
            self._persist(service)
            delay = outcome.requeue_after or self._config.retry_delay_seconds
            logger.info(
                "Step not complete, requeueing",
                extra={
                    "service": service.key,
                    "step": step,
                    "reason": outcome.message,
                    "requeue_after_seconds": delay,
                },
            )
            return Result.after(delay)

        # Terminal: provider-reported failures stay FAILED, anything else is ERROR
        if status.state != ServiceState.FAILED:
            status.state = ServiceState.ERROR
            status.message = f"error reconciling service: {outcome.message}"
        self._persist(service)
        logger.error(
            "Service reconciliation failed",
            extra={"service": service.key, "step": step, "message": status.message},
        )
        return Result.done()

    def _set_error(self, service: Service, message: str) -> Result:
        service.status.state = ServiceState.ERROR
        service.status.message = message
        self._persist(service)
        logger.warning("Service in error state", extra={"service": service.key, "message": message})
        return Result.done()

    def _persist(self, service: Service) -> None:
        persisted = self._store.update_status(service)
        service.metadata.resource_version = persisted.metadata.resource_version

    def _update(self, service: Service) -> None:
        """Write spec and metadata, keeping ``service`` as the working copy."""
        persisted = self._store.update(service)
        service.metadata.resource_version = persisted.metadata.resource_version
        service.metadata.generation = persisted.metadata.generation

    @staticmethod
    def _log_record(record: ReconcileRecord) -> None:
        extra = {
            "service": record.service,
            "state": record.state,
            "requeue": record.result.requeue,
            "requeue_after_seconds": record.result.requeue_after,
            "duration_seconds": record.duration_seconds,
        }
        if record.success:
            logger.info("Service reconcile finished", extra=extra)
        else:
            extra["error"] = str(record.error)
            logger.error("Service reconcile raised", extra=extra)
