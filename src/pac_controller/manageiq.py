"""ManageIQ gateway for the external service mirror."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from azure.core.credentials import TokenCredential

from .rest import RestClient

SERVICE_ATTRIBUTES = "name,retired,created_at,evm_owner_id,vms"


@dataclass(frozen=True)
class MirroredVM:
    name: str
    uid_ems: str = ""


@dataclass(frozen=True)
class MirroredService:
    """A ManageIQ service with the VMs it owns."""

    id: str
    name: str
    retired: bool = False
    created_at: datetime | None = None
    owner_id: str = ""
    vms: tuple[MirroredVM, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> MirroredService:
        created_at = data.get("created_at")
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            retired=bool(data.get("retired")),
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00")) if created_at else None,
            owner_id=str(data.get("evm_owner_id") or ""),
            vms=tuple(
                MirroredVM(name=vm.get("name", ""), uid_ems=vm.get("uid_ems", ""))
                for vm in data.get("vms") or []
            ),
        )


class ServiceMirrorClient:
    """Read-only client for ManageIQ services."""

    def __init__(
        self,
        credential: TokenCredential,
        base_url: str,
        *,
        timeout_seconds: float = 30,
    ) -> None:
        self._rest = RestClient(
            base_url,
            credential,
            default_headers={"Accept": "application/json"},
            timeout_seconds=timeout_seconds,
        )

    def close(self) -> None:
        self._rest.close()

    def list_services(self) -> list[MirroredService]:
        body = self._rest.get(
            "/api/services",
            params={"expand": "resources", "attributes": SERVICE_ATTRIBUTES},
        ) or {}
        return [MirroredService.from_api(item) for item in body.get("resources") or []]
