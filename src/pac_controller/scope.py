"""Per-invocation gateway bundles and the deadline wrapper for external calls.

Each reconciliation builds its own bundle of clients from the catalog it
works against. Nothing here is cached across invocations except the token
credential, which is thread-safe.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential

from .config import Config
from .models import Catalog, Service
from .platform import PlatformClient
from .powervs import PowerVSClient
from .validation import PowerVSCRN, ValidationError, parse_powervs_crn
from .vpc import LoadBalancerClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Gateways:
    """Clients for one PowerVS workspace and the shared ingress load balancer."""

    compute: PowerVSClient
    platform: PlatformClient
    load_balancer: LoadBalancerClient | None = None

    def close(self) -> None:
        self.compute.close()
        self.platform.close()
        if self.load_balancer is not None:
            self.load_balancer.close()

    def __enter__(self) -> Gateways:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class GatewayFactory:
    """Builds gateway bundles addressed by a catalog's workspace CRN."""

    def __init__(self, credential: TokenCredential, config: Config) -> None:
        self._credential = credential
        self._config = config

    def for_catalog(self, catalog: Catalog) -> Gateways:
        """Build the clients a catalog's resources are reached through.

        Raises:
            ValidationError: If the catalog has no VM section, its CRN is malformed
                or names a zone with no known region.
        """
        if catalog.spec.vm is None:
            raise ValidationError(f"catalog {catalog.name} has no vm section")
        crn = parse_powervs_crn(catalog.spec.vm.crn)
        timeout = self._config.api_timeout_seconds

        load_balancer = None
        if self._config.ingress_enabled:
            load_balancer = LoadBalancerClient(
                self._credential,
                self._config.vpc_region or "",
                self._config.load_balancer_id or "",
                timeout_seconds=timeout,
            )

        return Gateways(
            compute=PowerVSClient(
                self._credential,
                crn.zone,
                crn.account,
                crn.guid,
                endpoint=self._config.powervs_endpoint,
                timeout_seconds=timeout,
            ),
            platform=PlatformClient(self._credential, timeout_seconds=timeout),
            load_balancer=load_balancer,
        )


@dataclass(frozen=True)
class CatalogScope:
    """Everything one catalog check needs, built once per invocation."""

    catalog: Catalog
    crn: PowerVSCRN
    gateways: Gateways
    timeout_seconds: float

    async def call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        return await call_with_deadline(operation, fn, *args, timeout_seconds=self.timeout_seconds)


@dataclass(frozen=True)
class ServiceScope:
    """Everything one service reconciliation needs, built once per invocation.

    ``service`` is the working copy whose status the steps update; the
    reconciler persists it between steps.
    """

    service: Service
    catalog: Catalog
    gateways: Gateways
    timeout_seconds: float

    async def call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        return await call_with_deadline(operation, fn, *args, timeout_seconds=self.timeout_seconds)


async def call_with_deadline(
    operation: str,
    fn: Callable[..., T],
    *args: Any,
    timeout_seconds: float,
) -> T:
    """Run a blocking gateway call in the executor with a deadline.

    Raises:
        TimeoutError: If the call exceeds ``timeout_seconds``.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, lambda: fn(*args)),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        logger.error(
            f"{operation} timed out",
            extra={"operation": operation, "timeout_seconds": timeout_seconds},
        )
        raise
