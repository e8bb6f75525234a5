"""Builders for Catalog and Service resources used across tests."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pac_controller.models import (
    Capacity,
    Catalog,
    CatalogReference,
    CatalogSpec,
    ObjectMeta,
    Port,
    Service,
    ServiceSpec,
    VMCatalog,
)

from .cloud import WORKSPACE_CRN
from .compute import DEFAULT_IMAGE


def make_catalog(
    name: str = "vm-small",
    namespace: str = "default",
    cpu: str = "4",
    memory: int = 8192,
    vm_cpu: str = "1",
    vm_memory: int = 4096,
    network: str = "",
    retired: bool = False,
    expiry: int = 7,
    ready: bool = False,
    **vm_overrides: Any,
) -> Catalog:
    vm = {
        "crn": WORKSPACE_CRN,
        "processor_type": "shared",
        "system_type": "s922",
        "image": DEFAULT_IMAGE,
        "network": network,
        "capacity": Capacity(cpu=vm_cpu, memory=vm_memory),
        **vm_overrides,
    }
    catalog = Catalog(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=CatalogSpec(
            capacity=Capacity(cpu=cpu, memory=memory),
            retired=retired,
            expiry=expiry,
            vm=VMCatalog(**vm),
        ),
    )
    catalog.status.ready = ready
    return catalog


def make_service(
    name: str = "my-vm",
    namespace: str = "default",
    catalog: str = "vm-small",
    user_id: str = "user-1",
    cpu: str = "",
    memory: int = 0,
    ports: list[int] | None = None,
    expiry: datetime | None = None,
    ssh_keys: list[str] | None = None,
) -> Service:
    return Service(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=ServiceSpec(
            user_id=user_id,
            display_name=name,
            expiry=expiry,
            catalog=CatalogReference(name=catalog),
            ssh_keys=ssh_keys if ssh_keys is not None else ["ssh-ed25519 AAAAC3Nz user@example.com"],
            capacity=Capacity(cpu=cpu, memory=memory),
            ports=[Port(number=p) for p in (ports or [])],
        ),
    )
