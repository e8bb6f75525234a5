"""VPC load balancer gateway: pools and listeners of one load balancer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ResourceNotFoundError

from .rest import RestClient

logger = logging.getLogger(__name__)

VPC_ENDPOINT_TEMPLATE = "https://{region}.iaas.cloud.ibm.com/v1"

# Pinned API date; the VPC API rejects requests without one
VPC_API_VERSION = "2024-04-30"
VPC_API_GENERATION = "2"


@dataclass(frozen=True)
class LoadBalancer:
    id: str
    name: str
    hostname: str
    provisioning_status: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> LoadBalancer:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            hostname=data.get("hostname", ""),
            provisioning_status=data.get("provisioning_status", ""),
        )


@dataclass(frozen=True)
class HealthMonitor:
    type: str
    delay: int
    max_retries: int
    timeout: int

    def to_api(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "delay": self.delay,
            "max_retries": self.max_retries,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class PoolMember:
    address: str
    port: int
    weight: int

    def to_api(self) -> dict[str, Any]:
        return {"port": self.port, "target": {"address": self.address}, "weight": self.weight}


@dataclass(frozen=True)
class Pool:
    id: str
    name: str
    protocol: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Pool:
        return cls(id=data.get("id", ""), name=data.get("name", ""), protocol=data.get("protocol", ""))


@dataclass(frozen=True)
class Listener:
    id: str
    port: int
    protocol: str = ""
    default_pool_id: str = ""
    default_pool_name: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Listener:
        pool = data.get("default_pool") or {}
        return cls(
            id=data.get("id", ""),
            port=int(data.get("port", 0)),
            protocol=data.get("protocol", ""),
            default_pool_id=pool.get("id", ""),
            default_pool_name=pool.get("name", ""),
        )


class LoadBalancerClient:
    """Client scoped to a single VPC load balancer."""

    def __init__(
        self,
        credential: TokenCredential,
        region: str,
        load_balancer_id: str,
        *,
        endpoint: str | None = None,
        timeout_seconds: float = 30,
    ) -> None:
        self._load_balancer_id = load_balancer_id
        self._rest = RestClient(
            endpoint or VPC_ENDPOINT_TEMPLATE.format(region=region),
            credential,
            default_params={"version": VPC_API_VERSION, "generation": VPC_API_GENERATION},
            default_headers={"Accept": "application/json"},
            timeout_seconds=timeout_seconds,
        )

    @property
    def load_balancer_id(self) -> str:
        return self._load_balancer_id

    @property
    def _prefix(self) -> str:
        return f"/load_balancers/{self._load_balancer_id}"

    def close(self) -> None:
        self._rest.close()

    def get_load_balancer(self) -> LoadBalancer:
        return LoadBalancer.from_api(self._rest.get(self._prefix))

    # Pools

    def list_pools(self) -> list[Pool]:
        body = self._rest.get(f"{self._prefix}/pools") or {}
        return [Pool.from_api(item) for item in body.get("pools") or []]

    def get_pool_by_name(self, name: str) -> Pool:
        for pool in self.list_pools():
            if pool.name == name:
                return pool
        raise ResourceNotFoundError(f"pool {name} not found")

    def create_pool(
        self,
        name: str,
        protocol: str,
        health_monitor: HealthMonitor,
        members: list[PoolMember],
        algorithm: str = "round_robin",
    ) -> Pool:
        logger.info("Creating load balancer pool", extra={"pool": name, "protocol": protocol})
        body = self._rest.post(
            f"{self._prefix}/pools",
            {
                "name": name,
                "algorithm": algorithm,
                "protocol": protocol,
                "health_monitor": health_monitor.to_api(),
                "members": [m.to_api() for m in members],
            },
        )
        return Pool.from_api(body)

    def delete_pool(self, pool_id: str) -> None:
        logger.info("Deleting load balancer pool", extra={"pool_id": pool_id})
        self._rest.delete(f"{self._prefix}/pools/{pool_id}")

    # Listeners

    def list_listeners(self) -> list[Listener]:
        body = self._rest.get(f"{self._prefix}/listeners") or {}
        return [Listener.from_api(item) for item in body.get("listeners") or []]

    def get_listener_by_pool_name(self, pool_name: str) -> Listener:
        for listener in self.list_listeners():
            if listener.default_pool_name == pool_name:
                return listener
        raise ResourceNotFoundError(f"listener for pool {pool_name} not found")

    def create_listener(
        self, port: int, protocol: str, pool_id: str, connection_limit: int
    ) -> Listener:
        logger.info("Creating load balancer listener", extra={"port": port, "pool_id": pool_id})
        body = self._rest.post(
            f"{self._prefix}/listeners",
            {
                "port": port,
                "protocol": protocol,
                "connection_limit": connection_limit,
                "default_pool": {"id": pool_id},
            },
        )
        return Listener.from_api(body)

    def delete_listener(self, listener_id: str) -> None:
        logger.info("Deleting load balancer listener", extra={"listener_id": listener_id})
        self._rest.delete(f"{self._prefix}/listeners/{listener_id}")
