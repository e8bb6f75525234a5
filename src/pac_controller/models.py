"""Pydantic models for Catalog and Service resources.

Resources follow the Kubernetes shape (apiVersion/kind/metadata/spec/status)
so manifests written for the original CRDs load unchanged. Spec fields keep
their snake_case wire names; object metadata uses the Kubernetes camelCase
names via aliases.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

API_VERSION = "app.pac.io/v1alpha1"

SERVICE_FINALIZER = "services.pac.io/finalizer"
CATALOG_FINALIZER = "catalogs.pac.io/finalizer"


class CatalogType(str, Enum):
    """Kinds of offering a catalog can describe."""

    VM = "VM"


class ServiceState(str, Enum):
    """Business state of a Service, recorded in its status."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    CREATED = "CREATED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"


class Lifecycle(str, Enum):
    """Deletion lifecycle of a resource, independent of its business state."""

    ACTIVE = "Active"
    PENDING_DELETION = "PendingDeletion"


class PortProtocol(str, Enum):
    """Protocols a service port can be exposed with."""

    TCP = "tcp"
    UDP = "udp"
    HTTP = "http"
    HTTPS = "https"


# =============================================================================
# Object metadata
# =============================================================================


class OwnerReference(BaseModel):
    """Link from a dependent resource to the resource that owns it."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str
    name: str
    uid: str = ""


class ObjectMeta(BaseModel):
    """Identity, versioning and lifecycle markers shared by all resources."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list, alias="ownerReferences")
    labels: dict[str, str] = Field(default_factory=dict)


class Resource(BaseModel):
    """Common behaviour of stored resources."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        """Store key of the resource: ``<namespace>/<name>``."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def lifecycle(self) -> Lifecycle:
        if self.metadata.deletion_timestamp is not None:
            return Lifecycle.PENDING_DELETION
        return Lifecycle.ACTIVE

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer. Returns True if the resource changed."""
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer. Returns True if the resource changed."""
        if finalizer not in self.metadata.finalizers:
            return False
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]
        return True

    def set_owner(self, owner: Resource, kind: str) -> bool:
        """Ensure an owner reference to ``owner``. Returns True if added."""
        for ref in self.metadata.owner_references:
            if ref.kind == kind and ref.name == owner.name:
                return False
        self.metadata.owner_references.append(
            OwnerReference(kind=kind, name=owner.name, uid=owner.metadata.uid)
        )
        return True

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# =============================================================================
# Catalog
# =============================================================================


class Capacity(BaseModel):
    """CPU (fractional cores, as text) and memory of a VM shape.

    Memory is in the unit the compute API takes (GB for PowerVS).

    An empty ``cpu`` or a zero ``memory`` means "unset".
    """

    model_config = {"extra": "ignore"}

    cpu: str = ""
    memory: Annotated[int, Field(ge=0)] = 0

    @field_validator("cpu", mode="before")
    @classmethod
    def coerce_cpu(cls, v: Any) -> str:
        # YAML turns `cpu: 0.5` into a float
        if v is None:
            return ""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class VMCatalog(BaseModel):
    """Backing resources of a VM catalog in a PowerVS workspace."""

    model_config = {"extra": "ignore"}

    crn: Annotated[str, Field(min_length=1)]
    processor_type: str
    system_type: str
    image: Annotated[str, Field(min_length=1)]
    # Empty means: pick or create a public network at provisioning time
    network: str = ""
    capacity: Capacity = Field(default_factory=Capacity)


class CatalogSpec(BaseModel):
    """Desired state of a Catalog."""

    model_config = {"extra": "ignore"}

    type: CatalogType = CatalogType.VM
    description: str = ""
    capacity: Capacity = Field(default_factory=Capacity)
    retired: bool = False
    # Default service lifetime in days
    expiry: Annotated[int, Field(ge=0)] = 0
    image_thumbnail_reference: str = ""
    vm: VMCatalog | None = None


class CatalogStatus(BaseModel):
    """Observed readiness of a Catalog."""

    model_config = {"extra": "ignore"}

    ready: bool = False
    message: str = ""


class Catalog(Resource):
    """A template for a provisionable offering."""

    kind: Literal["Catalog"] = "Catalog"
    spec: CatalogSpec
    status: CatalogStatus = Field(default_factory=CatalogStatus)


# =============================================================================
# Service
# =============================================================================


class CatalogReference(BaseModel):
    """Reference to a Catalog in the same namespace."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]


class Port(BaseModel):
    """A declared port and, once exposed, its resolved ingress details."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    number: Annotated[int, Field(ge=1, le=65535)]
    protocol: PortProtocol = PortProtocol.TCP
    target: int | None = None
    backend_pool: str | None = Field(None, alias="backendPool")


class ServiceSpec(BaseModel):
    """Desired state of a Service.

    ``user_id`` and ``catalog`` are immutable after creation; the store
    rejects updates that change them.
    """

    model_config = {"extra": "ignore"}

    user_id: Annotated[str, Field(min_length=1)]
    display_name: str = ""
    expiry: datetime | None = None
    catalog: CatalogReference
    ssh_keys: list[str] = Field(default_factory=list)
    # Requested shape; unset fields inherit the catalog's VM shape
    capacity: Capacity = Field(default_factory=Capacity)
    ports: list[Port] = Field(default_factory=list)

    @field_validator("expiry")
    @classmethod
    def expiry_is_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @field_validator("ports")
    @classmethod
    def validate_unique_ports(cls, v: list[Port]) -> list[Port]:
        numbers = [p.number for p in v]
        if len(numbers) != len(set(numbers)):
            raise ValueError("port numbers must be unique")
        return v


class VMStatus(BaseModel):
    """Observed state of the instance backing a Service."""

    model_config = {"extra": "ignore"}

    instance_id: str = ""
    ip_address: str = ""
    external_ip_address: str = ""
    mac_address: str = ""
    network_name: str = ""
    state: str = ""


class ServiceStatus(BaseModel):
    """Observed state of a Service, written only by the controller."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    vm: VMStatus = Field(default_factory=VMStatus)
    ports: list[Port] = Field(default_factory=list)
    ingress_endpoint: str = Field("", alias="ingressEndpoint")
    access_info: str = Field("", alias="accessInfo")
    state: ServiceState | None = None
    message: str = ""
    expired: bool = False
    successful: bool = False

    @field_validator("state", mode="before")
    @classmethod
    def empty_state_is_none(cls, v: Any) -> Any:
        return v or None


class Service(Resource):
    """A single provisioned instance of a catalog."""

    kind: Literal["Service"] = "Service"
    spec: ServiceSpec
    status: ServiceStatus = Field(default_factory=ServiceStatus)

    def is_expired(self, now: datetime) -> bool:
        return self.spec.expiry is not None and now >= self.spec.expiry


# =============================================================================
# Derived values
# =============================================================================


def backend_pool_name(service_name: str, port: int) -> str:
    """Deterministic load balancer pool name for a service port."""
    return f"{service_name}-{port}"


def access_info(vm: VMStatus) -> str:
    """Connection hint for a VM, preferring its external address."""
    if vm.external_ip_address:
        if vm.ip_address:
            return f"External IP: {vm.external_ip_address}, Internal IP: {vm.ip_address}"
        return f"External IP: {vm.external_ip_address}"
    if vm.ip_address:
        return f"Internal IP: {vm.ip_address}"
    return "IP address not yet assigned"
