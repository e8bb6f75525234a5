"""Mirror of ManageIQ services into Service resources.

Each ManageIQ service backed by at least one VM becomes a Service named
after its first VM, so the provisioner adopts the existing instance instead
of creating one. Retired ManageIQ services have their mirrored Service
deleted, which tears the instance down through the normal deletion path.
Only Services carrying the mirror label are ever touched.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta

from azure.core.exceptions import AzureError

from .config import Config
from .credentials import KeycloakPasswordCredential
from .manageiq import MirroredService, ServiceMirrorClient
from .models import (
    Catalog,
    CatalogReference,
    ObjectMeta,
    Port,
    PortProtocol,
    Service,
    ServiceSpec,
)
from .scope import call_with_deadline
from .store import KIND_SERVICE, ImmutableFieldError, NotFoundError, ResourceStore, StoreError

logger = logging.getLogger(__name__)

MIRROR_SOURCE_LABEL = "pac.io/mirrored-from"
MIRROR_SOURCE = "manageiq"
MIRROR_ID_LABEL = "pac.io/manageiq-service-id"

MIRRORED_PORTS = (Port(number=22, protocol=PortProtocol.TCP),)

# Service names end up in load balancer pool names
VALID_SERVICE_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")


@dataclass
class MirrorSyncResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def is_mirrored(service: Service) -> bool:
    return service.metadata.labels.get(MIRROR_SOURCE_LABEL) == MIRROR_SOURCE


def mirrored_service_name(source: MirroredService) -> str | None:
    """Name of the Service mirroring ``source``, or None if it cannot be mirrored."""
    if not source.vms:
        return None
    name = source.vms[0].name.lower()
    if not VALID_SERVICE_NAME.match(name):
        return None
    return name


def build_mirrored_spec(source: MirroredService, catalog: Catalog) -> ServiceSpec:
    expiry = None
    if source.created_at is not None and catalog.spec.expiry > 0:
        expiry = source.created_at + timedelta(days=catalog.spec.expiry)
    return ServiceSpec(
        user_id=source.owner_id or MIRROR_SOURCE,
        display_name=source.name,
        expiry=expiry,
        catalog=CatalogReference(name=catalog.name),
        ports=[p.model_copy() for p in MIRRORED_PORTS],
    )


class MirrorSync:
    """Periodically upserts and deletes mirrored Services.

    Owns ``client`` and, when given, the ``credential`` it authenticates with;
    both are released by ``close()``.
    """

    def __init__(
        self,
        store: ResourceStore,
        client: ServiceMirrorClient,
        config: Config,
        credential: KeycloakPasswordCredential | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config
        self._credential = credential

    def close(self) -> None:
        self._client.close()
        if self._credential is not None:
            self._credential.close()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        interval = self._config.mirror.interval_seconds
        logger.info(
            "Starting service mirror",
            extra={"catalog": self._config.mirror.catalog, "interval_seconds": interval},
        )
        while not shutdown_event.is_set():
            try:
                await self.sync()
            except (AzureError, TimeoutError) as e:
                logger.warning("Service mirror sync failed", extra={"error": str(e)})
            except Exception as e:
                logger.exception("Service mirror sync failed unexpectedly", extra={"error": str(e)})

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except TimeoutError:
                pass

    async def sync(self) -> MirrorSyncResult:
        """One mirror pass.

        Raises:
            AzureError: If ManageIQ cannot be listed.
            TimeoutError: If listing exceeds the API timeout.
        """
        result = MirrorSyncResult()
        sources = await call_with_deadline(
            "List ManageIQ services",
            self._client.list_services,
            timeout_seconds=self._config.api_timeout_seconds,
        )

        namespace = self._config.namespace
        catalog_name = self._config.mirror.catalog or ""
        try:
            catalog: Catalog | None = self._store.get_catalog(namespace, catalog_name)
        except NotFoundError:
            logger.warning(
                "Mirror catalog not found, only retirements are mirrored",
                extra={"catalog": catalog_name, "namespace": namespace},
            )
            catalog = None

        for source in sources:
            name = mirrored_service_name(source)
            if name is None:
                logger.debug(
                    "Skipping ManageIQ service that cannot be mirrored",
                    extra={"miq_service_id": source.id, "miq_service": source.name},
                )
                result.skipped.append(source.name)
                continue

            try:
                if source.retired:
                    self._delete(namespace, name, result)
                elif catalog is not None:
                    self._upsert(namespace, name, source, catalog, result)
            except StoreError as e:
                logger.warning(
                    "Could not mirror ManageIQ service",
                    extra={"miq_service_id": source.id, "service": name, "error": str(e)},
                )
                result.skipped.append(name)

        if result.created or result.updated or result.deleted:
            logger.info(
                "Service mirror sync completed",
                extra={
                    "created": result.created,
                    "updated": result.updated,
                    "deleted": result.deleted,
                    "skipped": len(result.skipped),
                },
            )
        return result

    def _delete(self, namespace: str, name: str, result: MirrorSyncResult) -> None:
        try:
            existing = self._store.get_service(namespace, name)
        except NotFoundError:
            return
        if not is_mirrored(existing) or existing.metadata.deletion_timestamp is not None:
            return
        self._store.delete(KIND_SERVICE, namespace, name)
        result.deleted.append(name)
        logger.info("Retired ManageIQ service, deleting mirror", extra={"service": name})

    def _upsert(
        self,
        namespace: str,
        name: str,
        source: MirroredService,
        catalog: Catalog,
        result: MirrorSyncResult,
    ) -> None:
        spec = build_mirrored_spec(source, catalog)
        labels = {MIRROR_SOURCE_LABEL: MIRROR_SOURCE, MIRROR_ID_LABEL: source.id}

        try:
            existing = self._store.get_service(namespace, name)
        except NotFoundError:
            service = Service(
                metadata=ObjectMeta(name=name, namespace=namespace, labels=labels),
                spec=spec,
            )
            self._store.create(service)
            result.created.append(name)
            return

        if not is_mirrored(existing):
            result.skipped.append(name)
            return
        if existing.spec.user_id != spec.user_id or existing.spec.catalog != spec.catalog:
            raise ImmutableFieldError(f"mirrored service {name} changed owner or catalog")

        # Capacity and SSH keys are left as they are
        updated = existing.spec.model_copy(
            update={"display_name": spec.display_name, "expiry": spec.expiry, "ports": spec.ports}
        )
        merged_labels = {**existing.metadata.labels, **labels}
        if updated == existing.spec and existing.metadata.labels == merged_labels:
            return
        existing.spec = updated
        existing.metadata.labels = merged_labels
        self._store.update(existing)
        result.updated.append(name)
