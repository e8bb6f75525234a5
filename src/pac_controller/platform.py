"""Resource controller gateway, used to check that a workspace is active."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential

from .rest import RestClient

RESOURCE_CONTROLLER_ENDPOINT = "https://resource-controller.cloud.ibm.com"

RESOURCE_STATE_ACTIVE = "active"


@dataclass(frozen=True)
class ResourceInstance:
    """The parts of a resource instance the catalog checker cares about."""

    id: str
    guid: str
    name: str
    state: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ResourceInstance:
        return cls(
            id=data.get("id", ""),
            guid=data.get("guid", ""),
            name=data.get("name", ""),
            state=data.get("state", ""),
        )


class PlatformClient:
    """Client for the IBM Cloud resource controller."""

    def __init__(
        self,
        credential: TokenCredential,
        *,
        endpoint: str = RESOURCE_CONTROLLER_ENDPOINT,
        timeout_seconds: float = 30,
    ) -> None:
        self._rest = RestClient(
            endpoint,
            credential,
            default_headers={"Accept": "application/json"},
            timeout_seconds=timeout_seconds,
        )

    def close(self) -> None:
        self._rest.close()

    def get_resource_instance(self, instance_id: str) -> ResourceInstance:
        return ResourceInstance.from_api(self._rest.get(f"/v2/resource_instances/{instance_id}"))
