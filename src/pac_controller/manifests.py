"""Manifest loading with validation.

Catalog and Service resources are read from a directory of YAML files in
Kubernetes form (``apiVersion``/``kind``/``metadata``/``spec``). A file may
hold several documents. All file operations enforce size limits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_MANIFEST_FILES
from .models import API_VERSION, Catalog, Resource, Service
from .store import AlreadyExistsError, InMemoryStore

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

RESOURCE_KINDS: dict[str, type[Resource]] = {
    "Catalog": Catalog,
    "Service": Service,
}


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be read or fails validation."""

    pass


@dataclass
class ManifestSet:
    """Resources loaded from a manifest directory."""

    catalogs: list[Catalog] = field(default_factory=list)
    services: list[Service] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.catalogs) + len(self.services)


def format_validation_error(error: PydanticValidationError) -> str:
    lines = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        lines.append(f"  - {loc}: {detail['msg']}")
    return "\n".join(lines)


def parse_resource(document: dict[str, Any], source: str, namespace: str) -> Resource:
    """Validate one manifest document.

    Raises:
        ManifestLoadError: If the kind is unknown or validation fails.
    """
    api_version = document.get("apiVersion")
    if api_version != API_VERSION:
        raise ManifestLoadError(
            f"Unsupported apiVersion {api_version!r} in {source}, expected {API_VERSION}"
        )

    kind = document.get("kind")
    resource_class = RESOURCE_KINDS.get(str(kind))
    if resource_class is None:
        raise ManifestLoadError(
            f"Unknown kind {kind!r} in {source}. Valid kinds: {sorted(RESOURCE_KINDS)}"
        )

    metadata = document.get("metadata")
    if isinstance(metadata, dict) and "namespace" not in metadata:
        document = {**document, "metadata": {**metadata, "namespace": namespace}}

    try:
        return resource_class.model_validate(document)
    except PydanticValidationError as e:
        raise ManifestLoadError(
            f"Validation failed for {kind} in {source}:\n{format_validation_error(e)}"
        ) from e


def load_manifest_file(path: Path, namespace: str = "default") -> list[Resource]:
    """Load every document of one manifest file.

    Raises:
        ManifestLoadError: If the file is too large, unreadable or invalid.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    resources = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        source = f"{path} (document {index + 1})"
        if not isinstance(document, dict):
            raise ManifestLoadError(f"Manifest document must be a YAML mapping: {source}")
        resources.append(parse_resource(document, source, namespace))
    return resources


def load_manifests(manifests_dir: Path, namespace: str = "default") -> ManifestSet:
    """Load all ``*.yaml``/``*.yml`` manifests in a directory, sorted by name.

    Raises:
        ManifestLoadError: On the first invalid file, a duplicate resource or
            too many files.
    """
    if not manifests_dir.is_dir():
        raise ManifestLoadError(f"Manifests directory not found: {manifests_dir}")

    paths = sorted(
        p for p in manifests_dir.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES
    )
    if len(paths) > MAX_MANIFEST_FILES:
        raise ManifestLoadError(
            f"Too many manifest files in {manifests_dir}: {len(paths)} > {MAX_MANIFEST_FILES}"
        )

    manifests = ManifestSet()
    seen: set[tuple[str, str]] = set()
    for path in paths:
        for resource in load_manifest_file(path, namespace):
            identity = (resource.kind, resource.key)  # type: ignore[attr-defined]
            if identity in seen:
                raise ManifestLoadError(f"Duplicate {identity[0]} {identity[1]} in {path}")
            seen.add(identity)
            if isinstance(resource, Catalog):
                manifests.catalogs.append(resource)
            elif isinstance(resource, Service):
                manifests.services.append(resource)

    logger.info(
        "Loaded manifests",
        extra={
            "manifests_dir": str(manifests_dir),
            "catalogs": len(manifests.catalogs),
            "services": len(manifests.services),
        },
    )
    return manifests


def seed_store(store: InMemoryStore, manifests: ManifestSet) -> int:
    """Create every loaded resource in ``store``, catalogs first.

    Resources that already exist are left untouched. Returns the number of
    resources created.
    """
    created = 0
    for resource in [*manifests.catalogs, *manifests.services]:
        try:
            store.create(resource)
        except AlreadyExistsError:
            logger.debug("Resource already present, not seeding", extra={"key": resource.key})
            continue
        created += 1
    return created
