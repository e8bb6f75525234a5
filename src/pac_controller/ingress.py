"""Ingress orchestration: one load balancer pool and listener per service port.

Pools are named ``<service>-<port>`` and listeners are found through their
default pool, so both are always discovered before anything is created.
Listener ports are drawn at random from a fixed high range, skipping every
port already taken by a listener on the same load balancer.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .conditions import StepResult, result_from_exception
from .config import LISTENER_PORT_MAX, LISTENER_PORT_MIN
from .models import Port, PortProtocol, backend_pool_name
from .scope import ServiceScope
from .vpc import HealthMonitor, Listener, Pool, PoolMember

logger = logging.getLogger(__name__)

POOL_ALGORITHM = "round_robin"
HEALTH_MONITOR_DELAY_SECONDS = 5
HEALTH_MONITOR_MAX_RETRIES = 2
HEALTH_MONITOR_TIMEOUT_SECONDS = 2
POOL_MEMBER_WEIGHT = 50
LISTENER_CONNECTION_LIMIT = 15000

MESSAGE_NO_LOAD_BALANCER = "ports are declared but no ingress load balancer is configured"
MESSAGE_WAITING_FOR_IP = "waiting for the vm ip address before exposing ports"


class ListenerPortsExhaustedError(Exception):
    """Raised when every port in the listener range is taken."""

    pass


def health_monitor_for(protocol: PortProtocol) -> HealthMonitor:
    # UDP pools can only be probed over TCP
    monitor_type = "tcp" if protocol in (PortProtocol.TCP, PortProtocol.UDP) else protocol.value
    return HealthMonitor(
        type=monitor_type,
        delay=HEALTH_MONITOR_DELAY_SECONDS,
        max_retries=HEALTH_MONITOR_MAX_RETRIES,
        timeout=HEALTH_MONITOR_TIMEOUT_SECONDS,
    )


def allocate_listener_port(used: set[int], rng: random.Random | None = None) -> int:
    """Pick a random free listener port.

    Raises:
        ListenerPortsExhaustedError: If no port in the range is free.
    """
    free = [p for p in range(LISTENER_PORT_MIN, LISTENER_PORT_MAX + 1) if p not in used]
    if not free:
        raise ListenerPortsExhaustedError(
            f"no free listener port in range {LISTENER_PORT_MIN}-{LISTENER_PORT_MAX}"
        )
    return (rng or random).choice(free)


def merge_status_ports(declared: list[Port], observed: list[Port]) -> list[Port]:
    """Status ports for the declared ports, keeping resolved details by number."""
    by_number = {p.number: p for p in observed}
    merged = []
    for port in declared:
        existing = by_number.get(port.number)
        if existing is not None and existing.protocol == port.protocol:
            merged.append(existing.model_copy())
        else:
            merged.append(Port(number=port.number, protocol=port.protocol))
    return merged


class IngressOrchestrator:
    """Exposes a service's ports through the shared load balancer."""

    def __init__(self, scope: ServiceScope, rng: random.Random | None = None) -> None:
        self._scope = scope
        self._rng = rng

    async def ensure(self) -> StepResult:
        service = self._scope.service
        status = service.status

        stale = [p for p in status.ports if p.number not in {d.number for d in service.spec.ports}]
        status.ports = merge_status_ports(service.spec.ports, status.ports)
        if not status.ports and not stale:
            return StepResult.success()

        load_balancer = self._scope.gateways.load_balancer
        if load_balancer is None:
            return StepResult.terminal(MESSAGE_NO_LOAD_BALANCER)

        if stale:
            result = await self._remove_ports(stale)
            if not result.ok:
                return result
        if not status.ports:
            return StepResult.success()

        if not status.vm.ip_address:
            return StepResult.retry(MESSAGE_WAITING_FOR_IP)

        try:
            balancer = await self._scope.call("Get load balancer", load_balancer.get_load_balancer)
            pools = await self._scope.call("List pools", load_balancer.list_pools)
            listeners = await self._scope.call("List listeners", load_balancer.list_listeners)

            pools_by_name = {pool.name: pool for pool in pools}
            listeners_by_pool = {listener.default_pool_name: listener for listener in listeners}
            used_ports = {listener.port for listener in listeners}

            for port in status.ports:
                name = backend_pool_name(service.name, port.number)
                pool = pools_by_name.get(name)
                if pool is None:
                    pool = await self._create_pool(name, port, status.vm.ip_address)

                listener = listeners_by_pool.get(name)
                if listener is None:
                    listener = await self._create_listener(pool, port, used_ports)
                    used_ports.add(listener.port)

                port.backend_pool = name
                port.target = listener.port

            status.ingress_endpoint = balancer.hostname
        except ListenerPortsExhaustedError as e:
            return StepResult.terminal(str(e))
        except (AzureError, TimeoutError) as e:
            return result_from_exception("error reconciling ingress", e)

        logger.info(
            "Ingress reconciled",
            extra={
                "service": service.key,
                "endpoint": status.ingress_endpoint,
                "ports": {p.number: p.target for p in status.ports},
            },
        )
        return StepResult.success()

    async def teardown(self) -> StepResult:
        """Delete the listener and pool of every declared or recorded port."""
        service = self._scope.service
        numbers = {p.number for p in service.spec.ports} | {p.number for p in service.status.ports}
        if not numbers:
            return StepResult.success()
        if self._scope.gateways.load_balancer is None:
            logger.warning(
                "No load balancer configured, skipping ingress cleanup",
                extra={"service": service.key},
            )
            return StepResult.success()

        result = await self._remove_ports([Port(number=n) for n in sorted(numbers)])
        if result.ok:
            service.status.ingress_endpoint = ""
            for port in service.status.ports:
                port.target = None
                port.backend_pool = None
        return result

    async def _create_pool(self, name: str, port: Port, address: str) -> Pool:
        load_balancer = self._scope.gateways.load_balancer
        assert load_balancer is not None
        return await self._scope.call(
            "Create pool",
            load_balancer.create_pool,
            name,
            port.protocol.value,
            health_monitor_for(port.protocol),
            [PoolMember(address=address, port=port.number, weight=POOL_MEMBER_WEIGHT)],
            POOL_ALGORITHM,
        )

    async def _create_listener(self, pool: Pool, port: Port, used_ports: set[int]) -> Listener:
        load_balancer = self._scope.gateways.load_balancer
        assert load_balancer is not None
        listener_port = allocate_listener_port(used_ports, self._rng)
        return await self._scope.call(
            "Create listener",
            load_balancer.create_listener,
            listener_port,
            port.protocol.value,
            pool.id,
            LISTENER_CONNECTION_LIMIT,
        )

    async def _remove_ports(self, ports: list[Port]) -> StepResult:
        service = self._scope.service
        load_balancer = self._scope.gateways.load_balancer
        assert load_balancer is not None

        try:
            pools = await self._scope.call("List pools", load_balancer.list_pools)
            listeners = await self._scope.call("List listeners", load_balancer.list_listeners)
            pools_by_name = {pool.name: pool for pool in pools}
            listeners_by_pool = {listener.default_pool_name: listener for listener in listeners}

            for port in ports:
                name = backend_pool_name(service.name, port.number)
                # A pool cannot be deleted while a listener still points at it
                listener = listeners_by_pool.get(name)
                if listener is not None:
                    await self._delete_ignoring_missing(
                        "Delete listener", load_balancer.delete_listener, listener.id
                    )
                pool = pools_by_name.get(name)
                if pool is not None:
                    await self._delete_ignoring_missing(
                        "Delete pool", load_balancer.delete_pool, pool.id
                    )
        except (AzureError, TimeoutError) as e:
            return result_from_exception("error cleaning up ingress", e)

        return StepResult.success()

    async def _delete_ignoring_missing(
        self, operation: str, fn: Callable[[str], None], resource_id: str
    ) -> None:
        try:
            await self._scope.call(operation, fn, resource_id)
        except ResourceNotFoundError:
            pass
