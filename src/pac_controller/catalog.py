"""Catalog readiness checks and the catalog reconciler.

A catalog is ready only if every backing resource it names was verified at
the last check: the VM shape fits the capacity envelope, the workspace is
active, the image exists and is active, a pinned network exists, and the
system and processor types are supported. The first failure wins.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from azure.core.exceptions import AzureError

from .conditions import Condition, Result, StepResult, classify_exception
from .config import Config
from .models import CATALOG_FINALIZER, Catalog, CatalogType, Lifecycle
from .platform import RESOURCE_STATE_ACTIVE
from .scope import CatalogScope, GatewayFactory
from .store import ConflictError, NotFoundError, ResourceStore
from .validation import (
    ValidationError,
    parse_powervs_crn,
    validate_processor_type,
    validate_system_type,
    validate_vm_capacity,
)

logger = logging.getLogger(__name__)

CATALOG_READY_MESSAGE = "catalog ready to use"
IMAGE_STATE_ACTIVE = "active"


class CatalogNotReadyError(Exception):
    """Raised by a readiness check with the reason the catalog is unusable."""

    def __init__(self, message: str, condition: Condition = Condition.TERMINAL) -> None:
        super().__init__(message)
        self.condition = condition


def validate_vm_catalog(catalog: Catalog) -> None:
    """Checks that need no external call.

    Raises:
        CatalogNotReadyError: On the first invalid value.
    """
    vm = catalog.spec.vm
    if vm is None:
        raise CatalogNotReadyError("vm section is required for catalog type VM")
    try:
        validate_vm_capacity(catalog.spec.capacity, vm.capacity)
    except ValidationError as e:
        raise CatalogNotReadyError(f"error validating vm capacity: {e}") from e
    try:
        parse_powervs_crn(vm.crn)
        validate_system_type(vm.system_type)
        validate_processor_type(vm.processor_type)
    except ValidationError as e:
        raise CatalogNotReadyError(str(e)) from e


async def check_vm_catalog(scope: CatalogScope) -> None:
    """Verify the external resources behind a VM catalog.

    Raises:
        CatalogNotReadyError: With the first failure; ``condition`` tells
            whether the failure is worth re-checking soon.
    """
    catalog = scope.catalog
    vm = catalog.spec.vm
    assert vm is not None
    compute = scope.gateways.compute

    async def lookup(what: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await scope.call(what, fn, *args)
        except (AzureError, TimeoutError) as e:
            raise CatalogNotReadyError(f"{what}: {e}", classify_exception(e)) from e

    workspace = await lookup(
        f"error retrieving powervs instance with id {scope.crn.guid}",
        scope.gateways.platform.get_resource_instance,
        scope.crn.guid,
    )
    if workspace.state != RESOURCE_STATE_ACTIVE:
        raise CatalogNotReadyError(
            f"powervs instance not in active state, current state: {workspace.state}",
            Condition.RETRYABLE,
        )

    image = await lookup(f"error retrieving image {vm.image}", compute.get_image_by_name, vm.image)
    if image.state != IMAGE_STATE_ACTIVE:
        raise CatalogNotReadyError(
            f"image '{vm.image}' not in active state, current state: {image.state}",
            Condition.RETRYABLE,
        )

    if vm.network:
        await lookup(
            f"error retrieving network {vm.network}", compute.get_network_by_name, vm.network
        )


async def check_catalog_readiness(
    catalog: Catalog,
    gateway_factory: GatewayFactory,
    timeout_seconds: float,
) -> StepResult:
    """Run every readiness check for ``catalog``, fail-fast."""
    if catalog.spec.type != CatalogType.VM:
        return StepResult.terminal(f"not able to identify catalog type {catalog.spec.type}")

    try:
        validate_vm_catalog(catalog)
        assert catalog.spec.vm is not None
        crn = parse_powervs_crn(catalog.spec.vm.crn)
        with gateway_factory.for_catalog(catalog) as gateways:
            scope = CatalogScope(
                catalog=catalog, crn=crn, gateways=gateways, timeout_seconds=timeout_seconds
            )
            await check_vm_catalog(scope)
    except CatalogNotReadyError as e:
        return StepResult(e.condition, str(e))
    except ValidationError as e:
        return StepResult.terminal(str(e))

    return StepResult.success(CATALOG_READY_MESSAGE)


class CatalogReconciler:
    """Keeps catalog readiness current and guards catalog deletion.

    Args:
        store: Resource store.
        gateway_factory: Builds clients from a catalog's CRN.
        config: Controller configuration.
        on_readiness_change: Called with ``(namespace, name)`` of every service
            referencing a catalog whose readiness flipped.
    """

    def __init__(
        self,
        store: ResourceStore,
        gateway_factory: GatewayFactory,
        config: Config,
        on_readiness_change: Callable[[str, str], None] | None = None,
    ) -> None:
        self._store = store
        self._gateway_factory = gateway_factory
        self._config = config
        self._on_readiness_change = on_readiness_change

    async def reconcile(self, namespace: str, name: str) -> Result:
        try:
            catalog = self._store.get_catalog(namespace, name)
        except NotFoundError:
            return Result.done()

        try:
            if catalog.lifecycle == Lifecycle.PENDING_DELETION:
                return self._reconcile_delete(catalog)
            return await self._reconcile_active(catalog)
        except ConflictError as e:
            logger.info(
                "Catalog changed during reconcile, re-reading",
                extra={"catalog": catalog.key, "error": str(e)},
            )
            return Result.now()

    async def _reconcile_active(self, catalog: Catalog) -> Result:
        if catalog.add_finalizer(CATALOG_FINALIZER):
            catalog = self._store.update(catalog)

        was_ready = catalog.status.ready
        outcome = await check_catalog_readiness(
            catalog, self._gateway_factory, self._config.api_timeout_seconds
        )

        catalog.status.ready = outcome.ok
        catalog.status.message = outcome.message
        self._store.update_status(catalog)

        if outcome.ok:
            logger.info("Reconciled VM catalog", extra={"catalog": catalog.key})
        else:
            logger.warning(
                "Catalog not ready",
                extra={"catalog": catalog.key, "reason": outcome.message},
            )

        if was_ready != outcome.ok:
            self._notify_services(catalog)

        if outcome.condition == Condition.RETRYABLE:
            return Result.after(self._config.retry_delay_seconds)
        return Result.done()

    def _reconcile_delete(self, catalog: Catalog) -> Result:
        if not catalog.has_finalizer(CATALOG_FINALIZER):
            return Result.done()

        services = self._store.services_for_catalog(catalog)
        if services:
            names = ", ".join(sorted(s.name for s in services))
            catalog.status.message = (
                f"catalog is referenced by {len(services)} service(s), deletion blocked: {names}"
            )
            self._store.update_status(catalog)
            logger.info(
                "Catalog deletion blocked by referencing services",
                extra={"catalog": catalog.key, "services": names},
            )
            return Result.after(self._config.retry_delay_seconds)

        catalog.remove_finalizer(CATALOG_FINALIZER)
        self._store.update(catalog)
        logger.info("Catalog finalizer removed", extra={"catalog": catalog.key})
        return Result.done()

    def _notify_services(self, catalog: Catalog) -> None:
        if self._on_readiness_change is None:
            return
        for service in self._store.services_for_catalog(catalog):
            self._on_readiness_change(service.namespace, service.name)

