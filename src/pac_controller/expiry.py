"""Expiry monitor: the controller's only clock-driven actor.

On a fixed period it marks every service past its expiry as EXPIRED and
tears down its infrastructure through the same path deletion uses. Services
close to expiry get a single warning log event per day.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

from .conditions import StepResult
from .config import Config
from .ingress import IngressOrchestrator
from .models import Lifecycle, Service, ServiceState, ServiceStatus
from .provisioner import VMProvisioner
from .scope import GatewayFactory, ServiceScope
from .store import ConflictError, NotFoundError, ResourceStore
from .validation import ValidationError

logger = logging.getLogger(__name__)

MESSAGE_EXPIRED = "service expired"


def utcnow() -> datetime:
    return datetime.now(UTC)


def mark_expired(status: ServiceStatus) -> None:
    status.expired = True
    status.state = ServiceState.EXPIRED
    status.message = MESSAGE_EXPIRED
    status.access_info = ""


def has_infrastructure(status: ServiceStatus) -> bool:
    """Whether anything external is still recorded for a service."""
    return bool(status.vm.instance_id) or any(p.backend_pool for p in status.ports)


async def teardown_service(scope: ServiceScope) -> StepResult:
    """Undo every side effect of a service: ingress first, then the VM."""
    outcome = await IngressOrchestrator(scope).teardown()
    if not outcome.ok:
        return outcome
    return await VMProvisioner(scope).teardown()


@dataclass
class ExpirySweepResult:
    """Summary of one sweep."""

    expired: list[str] = field(default_factory=list)
    torn_down: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ExpiryMonitor:
    """Periodic sweep over all services of a namespace."""

    def __init__(
        self,
        store: ResourceStore,
        gateway_factory: GatewayFactory,
        config: Config,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway_factory = gateway_factory
        self._config = config
        self._clock = clock
        # service key -> day the last warning was logged
        self._warned: dict[str, date] = {}

    async def run(self, shutdown_event: asyncio.Event) -> None:
        logger.info(
            "Starting expiry monitor",
            extra={"interval_seconds": self._config.expiry_check_interval_seconds},
        )
        while not shutdown_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.exception("Expiry sweep failed", extra={"error": str(e)})

            try:
                await asyncio.wait_for(
                    shutdown_event.wait(),
                    timeout=self._config.expiry_check_interval_seconds,
                )
            except TimeoutError:
                pass

    async def sweep(self) -> ExpirySweepResult:
        now = self._clock()
        result = ExpirySweepResult()
        warning_window = timedelta(hours=self._config.expiry_warning_hours)

        for service in self._store.list_services(self._config.namespace):
            if service.lifecycle == Lifecycle.PENDING_DELETION:
                continue
            if service.spec.expiry is None:
                continue

            if service.is_expired(now):
                if service.status.state == ServiceState.EXPIRED:
                    continue
                await self._expire(service, result)
            elif service.spec.expiry - now <= warning_window:
                self._warn(service, now, result)

        self._prune_warnings(now.date())
        if result.expired or result.failed:
            logger.info(
                "Expiry sweep completed",
                extra={
                    "expired": result.expired,
                    "torn_down": result.torn_down,
                    "failed": result.failed,
                },
            )
        return result

    async def _expire(self, service: Service, result: ExpirySweepResult) -> None:
        mark_expired(service.status)
        try:
            persisted = self._store.update_status(service)
        except (ConflictError, NotFoundError) as e:
            # Changed concurrently; the next sweep sees the fresh copy
            logger.info(
                "Skipping expiry of concurrently modified service",
                extra={"service": service.key, "error": str(e)},
            )
            return
        service.metadata.resource_version = persisted.metadata.resource_version
        result.expired.append(service.key)
        logger.info(
            "Service expired",
            extra={"service": service.key, "user_id": service.spec.user_id},
        )

        if not has_infrastructure(service.status):
            return

        try:
            catalog = self._store.get_catalog(service.namespace, service.spec.catalog.name)
            gateways = self._gateway_factory.for_catalog(catalog)
        except (NotFoundError, ValidationError) as e:
            logger.warning(
                "Cannot tear down expired service",
                extra={"service": service.key, "error": str(e)},
            )
            result.failed.append(service.key)
            return

        with gateways:
            scope = ServiceScope(
                service=service,
                catalog=catalog,
                gateways=gateways,
                timeout_seconds=self._config.api_timeout_seconds,
            )
            outcome = await teardown_service(scope)

        if not outcome.ok:
            service.status.message = f"{MESSAGE_EXPIRED}, cleanup pending: {outcome.message}"
            result.failed.append(service.key)
        else:
            result.torn_down.append(service.key)

        try:
            self._store.update_status(service)
        except (ConflictError, NotFoundError) as e:
            logger.info(
                "Could not record teardown of expired service",
                extra={"service": service.key, "error": str(e)},
            )

    def _warn(self, service: Service, now: datetime, result: ExpirySweepResult) -> None:
        today = now.date()
        if self._warned.get(service.key) == today:
            return
        self._warned[service.key] = today
        assert service.spec.expiry is not None
        hours_left = (service.spec.expiry - now).total_seconds() / 3600
        logger.warning(
            "Service expiring soon",
            extra={
                "service": service.key,
                "user_id": service.spec.user_id,
                "expiry": service.spec.expiry.isoformat(),
                "hours_left": round(hours_left, 1),
            },
        )
        result.warned.append(service.key)

    def _prune_warnings(self, today: date) -> None:
        for key, day in list(self._warned.items()):
            if day < today:
                del self._warned[key]
