"""Resource store with optimistic concurrency and finalizer semantics.

The controller consumes the store through ``ResourceStore``. ``InMemoryStore``
implements it for a single controller process (seeded from manifests) and
for tests. The contract mirrors the Kubernetes API server:

- every write carries the ``resourceVersion`` it was based on; a stale
  version is rejected with ``ConflictError``
- deleting a resource that still has finalizers only stamps
  ``deletionTimestamp``; it disappears once its last finalizer is removed
- ``update_status`` writes only the status and does not notify watchers
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, TypeVar

from .models import Catalog, Resource, Service

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

KIND_CATALOG = "Catalog"
KIND_SERVICE = "Service"


class StoreError(Exception):
    """Base class for store failures."""

    pass


class NotFoundError(StoreError):
    """Raised when a resource does not exist."""

    pass


class AlreadyExistsError(StoreError):
    """Raised when creating a resource whose name is taken."""

    pass


class ConflictError(StoreError):
    """Raised when a write is based on a stale resourceVersion."""

    pass


class ImmutableFieldError(StoreError):
    """Raised when an update changes a field that is fixed after creation."""

    pass


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ResourceEvent:
    """Notification that a resource's spec or metadata changed."""

    type: EventType
    kind: str
    namespace: str
    name: str


Subscriber = Callable[[ResourceEvent], None]


class ResourceStore(Protocol):
    def subscribe(self, subscriber: Subscriber) -> None: ...

    def get_catalog(self, namespace: str, name: str) -> Catalog: ...

    def get_service(self, namespace: str, name: str) -> Service: ...

    def list_catalogs(self, namespace: str | None = None) -> list[Catalog]: ...

    def list_services(self, namespace: str | None = None) -> list[Service]: ...

    def services_for_catalog(self, catalog: Catalog) -> list[Service]: ...

    def create(self, resource: R) -> R: ...

    def update(self, resource: R) -> R: ...

    def update_status(self, resource: R) -> R: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...


class InMemoryStore:
    """Single-process ``ResourceStore``. All reads and writes are deep copies."""

    def __init__(self) -> None:
        self._objects: dict[str, dict[str, Resource]] = {KIND_CATALOG: {}, KIND_SERVICE: {}}
        self._version = 0
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    # Reads

    def get_catalog(self, namespace: str, name: str) -> Catalog:
        return self._get(KIND_CATALOG, namespace, name)  # type: ignore[return-value]

    def get_service(self, namespace: str, name: str) -> Service:
        return self._get(KIND_SERVICE, namespace, name)  # type: ignore[return-value]

    def list_catalogs(self, namespace: str | None = None) -> list[Catalog]:
        return self._list(KIND_CATALOG, namespace)  # type: ignore[return-value]

    def list_services(self, namespace: str | None = None) -> list[Service]:
        return self._list(KIND_SERVICE, namespace)  # type: ignore[return-value]

    def services_for_catalog(self, catalog: Catalog) -> list[Service]:
        """Services that reference ``catalog`` by owner reference or spec."""
        result = []
        for service in self.list_services(catalog.namespace):
            owned = any(
                ref.kind == KIND_CATALOG and ref.name == catalog.name
                for ref in service.metadata.owner_references
            )
            if owned or service.spec.catalog.name == catalog.name:
                result.append(service)
        return result

    # Writes

    def create(self, resource: R) -> R:
        objects = self._objects[resource.kind]
        if resource.key in objects:
            raise AlreadyExistsError(f"{resource.kind} {resource.key} already exists")

        stored = resource.model_copy(deep=True)
        stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
        stored.metadata.resource_version = self._next_version()
        stored.metadata.generation = 1
        stored.metadata.creation_timestamp = stored.metadata.creation_timestamp or datetime.now(UTC)
        stored.metadata.deletion_timestamp = None
        objects[stored.key] = stored

        logger.debug("Resource created", extra={"kind": resource.kind, "key": resource.key})
        self._notify(EventType.ADDED, stored)
        return stored.model_copy(deep=True)

    def update(self, resource: R) -> R:
        """Write spec and metadata. Status changes in ``resource`` are ignored."""
        current = self._current(resource)

        if isinstance(resource, Service):
            self._check_immutable(current, resource)  # type: ignore[arg-type]

        stored = resource.model_copy(deep=True)
        stored.status = current.status.model_copy(deep=True)  # type: ignore[attr-defined]
        stored.metadata.uid = current.metadata.uid
        stored.metadata.creation_timestamp = current.metadata.creation_timestamp
        # Deletion can only be requested through delete()
        stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
        stored.metadata.generation = current.metadata.generation
        if stored.spec != current.spec:  # type: ignore[attr-defined]
            stored.metadata.generation += 1
        stored.metadata.resource_version = self._next_version()

        if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
            del self._objects[resource.kind][resource.key]
            logger.debug("Resource removed", extra={"kind": resource.kind, "key": resource.key})
            self._notify(EventType.DELETED, stored)
            return stored.model_copy(deep=True)

        self._objects[resource.kind][resource.key] = stored
        self._notify(EventType.MODIFIED, stored)
        return stored.model_copy(deep=True)

    def update_status(self, resource: R) -> R:
        current = self._current(resource)
        stored = current.model_copy(deep=True)
        stored.status = resource.status.model_copy(deep=True)  # type: ignore[attr-defined]
        stored.metadata.resource_version = self._next_version()
        self._objects[resource.kind][resource.key] = stored
        return stored.model_copy(deep=True)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        key = f"{namespace}/{name}"
        current = self._objects[kind].get(key)
        if current is None:
            raise NotFoundError(f"{kind} {key} not found")

        if not current.metadata.finalizers:
            del self._objects[kind][key]
            self._notify(EventType.DELETED, current)
            return

        if current.metadata.deletion_timestamp is None:
            current.metadata.deletion_timestamp = datetime.now(UTC)
            current.metadata.resource_version = self._next_version()
            self._notify(EventType.MODIFIED, current)

    # Internals

    def _get(self, kind: str, namespace: str, name: str) -> Resource:
        key = f"{namespace}/{name}"
        stored = self._objects[kind].get(key)
        if stored is None:
            raise NotFoundError(f"{kind} {key} not found")
        return stored.model_copy(deep=True)

    def _list(self, kind: str, namespace: str | None) -> list[Resource]:
        return [
            obj.model_copy(deep=True)
            for key, obj in sorted(self._objects[kind].items())
            if namespace is None or obj.namespace == namespace
        ]

    def _current(self, resource: Resource) -> Resource:
        current = self._objects[resource.kind].get(resource.key)
        if current is None:
            raise NotFoundError(f"{resource.kind} {resource.key} not found")
        if resource.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"{resource.kind} {resource.key} was modified: "
                f"have version {resource.metadata.resource_version!r}, "
                f"current is {current.metadata.resource_version!r}"
            )
        return current

    @staticmethod
    def _check_immutable(current: Service, updated: Service) -> None:
        if updated.spec.user_id != current.spec.user_id:
            raise ImmutableFieldError("user_id is immutable")
        if updated.spec.catalog.name != current.spec.catalog.name:
            raise ImmutableFieldError("catalog is immutable")

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify(self, event_type: EventType, resource: Resource) -> None:
        event = ResourceEvent(event_type, resource.kind, resource.namespace, resource.name)
        for subscriber in self._subscribers:
            subscriber(event)
