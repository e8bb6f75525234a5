"""PowerVS gateway: instances, networks, images and DHCP servers.

Thin typed wrapper over the PowerVS REST API of a single workspace (cloud
instance). No policy lives here; callers decide what a missing resource or
a failed call means.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ResourceNotFoundError

from .rest import RestClient
from .validation import ValidationError

logger = logging.getLogger(__name__)

POWERVS_ENDPOINT_TEMPLATE = "https://{region}.power-iaas.cloud.ibm.com"

# Zone prefix -> API region
ZONE_REGIONS: dict[str, str] = {
    "dal": "us-south",
    "us-south": "us-south",
    "wdc": "us-east",
    "us-east": "us-east",
    "eu-de": "eu-de",
    "fra": "eu-de",
    "lon": "lon",
    "mad": "mad",
    "tor": "tor",
    "mon": "mon",
    "sao": "sao",
    "osa": "osa",
    "tok": "tok",
    "syd": "syd",
    "che": "che",
}

NETWORK_TYPE_PUBLIC = "pub-vlan"
NETWORK_TYPE_VLAN = "vlan"

ATTACHMENT_FIXED = "fixed"
ATTACHMENT_DYNAMIC = "dynamic"


def region_for_zone(zone: str) -> str:
    """Map a PowerVS zone (e.g. ``dal10``, ``eu-de-1``) to its API region.

    Raises:
        ValidationError: If no region serves ``zone``.
    """
    # Longest prefix first so "us-south" wins over anything shorter
    for prefix in sorted(ZONE_REGIONS, key=len, reverse=True):
        if zone.startswith(prefix):
            return ZONE_REGIONS[prefix]
    raise ValidationError(f"unknown PowerVS zone: {zone}")


@dataclass(frozen=True)
class InstanceNetwork:
    """A network attachment of an instance."""

    network_id: str
    network_name: str
    mac_address: str = ""
    ip_address: str = ""
    external_ip: str = ""
    # "fixed" (static) or "dynamic" (DHCP)
    type: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> InstanceNetwork:
        return cls(
            network_id=data.get("networkID", ""),
            network_name=data.get("networkName", ""),
            mac_address=data.get("macAddress", ""),
            ip_address=data.get("ipAddress") or data.get("ip") or "",
            external_ip=data.get("externalIP", ""),
            type=data.get("type", ""),
        )


@dataclass(frozen=True)
class Instance:
    """A PVM instance."""

    id: str
    name: str
    status: str = ""
    fault: str = ""
    networks: tuple[InstanceNetwork, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Instance:
        fault = data.get("fault") or {}
        return cls(
            id=data.get("pvmInstanceID", ""),
            name=data.get("serverName", ""),
            status=data.get("status", ""),
            fault=fault.get("message", "") if isinstance(fault, dict) else str(fault),
            networks=tuple(InstanceNetwork.from_api(n) for n in data.get("networks") or []),
        )


@dataclass(frozen=True)
class Network:
    """A workspace network. ``available_ips`` is only known from a get."""

    id: str
    name: str
    type: str = ""
    available_ips: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Network:
        metrics = data.get("ipAddressMetrics") or {}
        return cls(
            id=data.get("networkID", ""),
            name=data.get("name", ""),
            type=data.get("type", ""),
            available_ips=metrics.get("available"),
        )


@dataclass(frozen=True)
class Image:
    """A boot image available in the workspace."""

    id: str
    name: str
    state: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Image:
        return cls(id=data.get("imageID", ""), name=data.get("name", ""), state=data.get("state", ""))


@dataclass(frozen=True)
class DHCPLease:
    ip_address: str
    mac_address: str


@dataclass(frozen=True)
class DHCPServer:
    """A DHCP server and, when fetched individually, its lease table."""

    id: str
    network_id: str = ""
    network_name: str = ""
    status: str = ""
    leases: tuple[DHCPLease, ...] = field(default=())

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> DHCPServer:
        network = data.get("network") or {}
        return cls(
            id=data.get("id", ""),
            network_id=network.get("id", ""),
            network_name=network.get("name", ""),
            status=data.get("status", ""),
            leases=tuple(
                DHCPLease(
                    ip_address=lease.get("instanceIP", ""),
                    mac_address=lease.get("instanceMacAddress", ""),
                )
                for lease in data.get("leases") or []
            ),
        )


@dataclass(frozen=True)
class InstanceCreateRequest:
    """Parameters of a single instance-create call."""

    server_name: str
    image_id: str
    network_ids: tuple[str, ...]
    memory: float
    processors: float
    system_type: str
    processor_type: str
    user_data: str = ""

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "serverName": self.server_name,
            "imageID": self.image_id,
            "networks": [{"networkID": network_id} for network_id in self.network_ids],
            "memory": self.memory,
            "processors": self.processors,
            "sysType": self.system_type,
            "procType": self.processor_type,
        }
        if self.user_data:
            body["userData"] = self.user_data
        return body


class PowerVSClient:
    """Client for one PowerVS workspace.

    Args:
        credential: IAM token credential.
        zone: Workspace zone, e.g. ``dal10``.
        account: IBM Cloud account id owning the workspace.
        cloud_instance_id: Workspace guid.
        endpoint: Overrides the zone-derived API base URL.
        timeout_seconds: Per-request HTTP timeout.
    """

    def __init__(
        self,
        credential: TokenCredential,
        zone: str,
        account: str,
        cloud_instance_id: str,
        *,
        endpoint: str | None = None,
        timeout_seconds: float = 30,
    ) -> None:
        self._cloud_instance_id = cloud_instance_id
        self._zone = zone
        base_url = endpoint or POWERVS_ENDPOINT_TEMPLATE.format(region=region_for_zone(zone))
        crn = f"crn:v1:bluemix:public:power-iaas:{zone}:a/{account}:{cloud_instance_id}::"
        self._rest = RestClient(
            base_url,
            credential,
            default_headers={"CRN": crn, "Accept": "application/json"},
            timeout_seconds=timeout_seconds,
        )

    @property
    def _prefix(self) -> str:
        return f"/pcloud/v1/cloud-instances/{self._cloud_instance_id}"

    def close(self) -> None:
        self._rest.close()

    # Instances

    def list_instances(self) -> list[Instance]:
        body = self._rest.get(f"{self._prefix}/pvm-instances") or {}
        return [Instance.from_api(item) for item in body.get("pvmInstances") or []]

    def get_instance(self, instance_id: str) -> Instance:
        return Instance.from_api(self._rest.get(f"{self._prefix}/pvm-instances/{instance_id}"))

    def create_instance(self, request: InstanceCreateRequest) -> list[Instance]:
        logger.info(
            "Creating PowerVS instance",
            extra={"server_name": request.server_name, "zone": self._zone},
        )
        body = self._rest.post(f"{self._prefix}/pvm-instances", request.to_api())
        # The API answers with a list; one entry per replica
        if isinstance(body, dict):
            body = [body]
        return [Instance.from_api(item) for item in body or []]

    def delete_instance(self, instance_id: str) -> None:
        logger.info("Deleting PowerVS instance", extra={"instance_id": instance_id})
        self._rest.delete(f"{self._prefix}/pvm-instances/{instance_id}")

    # Networks

    def list_networks(self, network_type: str | None = None) -> list[Network]:
        params = {"filter": f"type:{network_type}"} if network_type else None
        body = self._rest.get(f"{self._prefix}/networks", params=params) or {}
        networks = [Network.from_api(item) for item in body.get("networks") or []]
        if network_type:
            networks = [n for n in networks if n.type == network_type]
        return networks

    def get_network(self, network_id: str) -> Network:
        return Network.from_api(self._rest.get(f"{self._prefix}/networks/{network_id}"))

    def get_network_by_name(self, name: str) -> Network:
        for network in self.list_networks():
            if network.name == name:
                return network
        raise ResourceNotFoundError(f"network {name} not found")

    def create_network(self, name: str, network_type: str, dns_servers: list[str]) -> Network:
        logger.info("Creating PowerVS network", extra={"network_name": name, "type": network_type})
        body = self._rest.post(
            f"{self._prefix}/networks",
            {"name": name, "type": network_type, "dnsServers": list(dns_servers)},
        )
        return Network.from_api(body)

    # Images

    def list_images(self) -> list[Image]:
        body = self._rest.get(f"{self._prefix}/images") or {}
        return [Image.from_api(item) for item in body.get("images") or []]

    def get_image_by_name(self, name: str) -> Image:
        for image in self.list_images():
            if image.name == name:
                return image
        raise ResourceNotFoundError(f"image {name} not found")

    # DHCP

    def list_dhcp_servers(self) -> list[DHCPServer]:
        body = self._rest.get(f"{self._prefix}/services/dhcp") or []
        return [DHCPServer.from_api(item) for item in body]

    def get_dhcp_server(self, server_id: str) -> DHCPServer:
        return DHCPServer.from_api(self._rest.get(f"{self._prefix}/services/dhcp/{server_id}"))
