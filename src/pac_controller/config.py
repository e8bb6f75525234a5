"""Configuration management with validation.

All settings come from environment variables and are validated once at
startup. Invalid configurations fail fast with a single ConfigurationError
listing every problem found.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_EXPIRY_CHECK_INTERVAL_SECONDS = 300
MIN_EXPIRY_CHECK_INTERVAL_SECONDS = 60
MAX_EXPIRY_CHECK_INTERVAL_SECONDS = 86400

DEFAULT_EXPIRY_WARNING_HOURS = 72

DEFAULT_RETRY_DELAY_SECONDS = 60
MIN_RETRY_DELAY_SECONDS = 5
MAX_RETRY_DELAY_SECONDS = 900

# Poll interval while a VM is building
DEFAULT_IN_PROGRESS_REQUEUE_SECONDS = 120

DEFAULT_API_TIMEOUT_SECONDS = 60
MIN_API_TIMEOUT_SECONDS = 5
MAX_API_TIMEOUT_SECONDS = 600

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES = 32

DEFAULT_MIRROR_INTERVAL_SECONDS = 300

# Listener ports handed out on the shared load balancer
LISTENER_PORT_MIN = 40000
LISTENER_PORT_MAX = 49999

# Manifest limits
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024
MAX_MANIFEST_FILES = 1000

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_REGION_PATTERN = r"^[a-z]{2}-[a-z]+$"


@dataclass(frozen=True)
class MirrorConfig:
    """Settings for mirroring ManageIQ services into Service resources.

    The mirror is optional: it is enabled only when ``miq_url`` is set, in
    which case every other field is required.
    """

    miq_url: str | None = None
    miq_username: str | None = None
    miq_password: str | None = field(default=None, repr=False)
    miq_client_id: str | None = None
    miq_client_secret: str | None = field(default=None, repr=False)
    keycloak_url: str | None = None
    keycloak_realm: str | None = None
    catalog: str | None = None
    interval_seconds: int = DEFAULT_MIRROR_INTERVAL_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.miq_url)

    def validate(self) -> list[str]:
        if not self.enabled:
            return []

        errors: list[str] = []
        required = {
            "MIQ_USERNAME": self.miq_username,
            "MIQ_PASSWORD": self.miq_password,
            "MIQ_CLIENT_ID": self.miq_client_id,
            "MIQ_CLIENT_SECRET": self.miq_client_secret,
            "KEYCLOAK_URL": self.keycloak_url,
            "KEYCLOAK_REALM": self.keycloak_realm,
            "MIRROR_CATALOG": self.catalog,
        }
        for key, value in required.items():
            if not value:
                errors.append(f"{key} is required when MIQ_URL is set")

        if self.interval_seconds < MIN_RECONCILE_INTERVAL_SECONDS:
            errors.append(
                f"MIRROR_INTERVAL must be at least {MIN_RECONCILE_INTERVAL_SECONDS} seconds"
            )
        return errors


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    namespace: str = "default"
    manifests_dir: Path | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    expiry_check_interval_seconds: int = DEFAULT_EXPIRY_CHECK_INTERVAL_SECONDS
    expiry_warning_hours: int = DEFAULT_EXPIRY_WARNING_HOURS
    retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS
    in_progress_requeue_seconds: int = DEFAULT_IN_PROGRESS_REQUEUE_SECONDS
    api_timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS

    # Workers per resource kind
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # Ingress
    vpc_region: str | None = None
    load_balancer_id: str | None = None

    # Overrides the zone-derived PowerVS endpoint (private endpoints, testing)
    powervs_endpoint: str | None = None

    debug: bool = False

    mirror: MirrorConfig = field(default_factory=MirrorConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"NAMESPACE must match pattern {VALID_NAMESPACE_PATTERN}: {self.namespace}")

        if self.manifests_dir is not None and not self.manifests_dir.is_dir():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_EXPIRY_CHECK_INTERVAL_SECONDS
            <= self.expiry_check_interval_seconds
            <= MAX_EXPIRY_CHECK_INTERVAL_SECONDS
        ):
            errors.append(
                f"EXPIRY_CHECK_INTERVAL must be between {MIN_EXPIRY_CHECK_INTERVAL_SECONDS} "
                f"and {MAX_EXPIRY_CHECK_INTERVAL_SECONDS} seconds"
            )

        if self.expiry_warning_hours < 0:
            errors.append("EXPIRY_WARNING_HOURS cannot be negative")

        if not (MIN_RETRY_DELAY_SECONDS <= self.retry_delay_seconds <= MAX_RETRY_DELAY_SECONDS):
            errors.append(
                f"RETRY_DELAY_SECONDS must be between {MIN_RETRY_DELAY_SECONDS} "
                f"and {MAX_RETRY_DELAY_SECONDS} seconds"
            )

        if self.in_progress_requeue_seconds < 1:
            errors.append("IN_PROGRESS_REQUEUE_SECONDS must be at least 1")

        if not (MIN_API_TIMEOUT_SECONDS <= self.api_timeout_seconds <= MAX_API_TIMEOUT_SECONDS):
            errors.append(
                f"API_TIMEOUT_SECONDS must be between {MIN_API_TIMEOUT_SECONDS} "
                f"and {MAX_API_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        # Region and id address a single load balancer
        if bool(self.vpc_region) != bool(self.load_balancer_id):
            errors.append("VPC_REGION and LOAD_BALANCER_ID must be set together")
        elif self.vpc_region and not re.match(VALID_REGION_PATTERN, self.vpc_region):
            errors.append(f"VPC_REGION must be a valid IBM Cloud region: {self.vpc_region}")

        errors.extend(self.mirror.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def ingress_enabled(self) -> bool:
        return bool(self.load_balancer_id)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            NAMESPACE: Namespace of the managed resources (default: default)
            MANIFESTS_DIR: Directory of Catalog/Service YAML manifests to seed
            RECONCILE_INTERVAL: Seconds between full resyncs (default: 300)
            EXPIRY_CHECK_INTERVAL: Seconds between expiry sweeps (default: 300)
            EXPIRY_WARNING_HOURS: Warn this many hours before expiry (default: 72)
            RETRY_DELAY_SECONDS: Delay before retrying a retryable step (default: 60)
            IN_PROGRESS_REQUEUE_SECONDS: Poll interval while a VM builds (default: 120)
            API_TIMEOUT_SECONDS: Deadline for every external call (default: 60)
            MAX_CONCURRENT_RECONCILES: Workers per resource kind (default: 4)
            VPC_REGION: Region of the ingress load balancer
            LOAD_BALANCER_ID: Ingress load balancer id
            POWERVS_ENDPOINT: Override for the PowerVS API base URL
            DEBUG: If "true", enable debug logging (default: false)

        Mirror Variables:
            MIQ_URL: ManageIQ base URL; enables the mirror when set
            MIQ_USERNAME, MIQ_PASSWORD: ManageIQ user credentials
            MIQ_CLIENT_ID, MIQ_CLIENT_SECRET: Keycloak client credentials
            KEYCLOAK_URL, KEYCLOAK_REALM: Keycloak token endpoint location
            MIRROR_CATALOG: Catalog referenced by mirrored services
            MIRROR_INTERVAL: Seconds between mirror passes (default: 300)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        manifests_dir = os.environ.get("MANIFESTS_DIR")

        return cls(
            namespace=os.environ.get("NAMESPACE", "default"),
            manifests_dir=Path(manifests_dir) if manifests_dir else None,
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            expiry_check_interval_seconds=get_int(
                "EXPIRY_CHECK_INTERVAL", DEFAULT_EXPIRY_CHECK_INTERVAL_SECONDS
            ),
            expiry_warning_hours=get_int("EXPIRY_WARNING_HOURS", DEFAULT_EXPIRY_WARNING_HOURS),
            retry_delay_seconds=get_int("RETRY_DELAY_SECONDS", DEFAULT_RETRY_DELAY_SECONDS),
            in_progress_requeue_seconds=get_int(
                "IN_PROGRESS_REQUEUE_SECONDS", DEFAULT_IN_PROGRESS_REQUEUE_SECONDS
            ),
            api_timeout_seconds=get_int("API_TIMEOUT_SECONDS", DEFAULT_API_TIMEOUT_SECONDS),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            vpc_region=os.environ.get("VPC_REGION") or None,
            load_balancer_id=os.environ.get("LOAD_BALANCER_ID") or None,
            powervs_endpoint=os.environ.get("POWERVS_ENDPOINT") or None,
            debug=get_bool("DEBUG", False),
            mirror=MirrorConfig(
                miq_url=os.environ.get("MIQ_URL") or None,
                miq_username=os.environ.get("MIQ_USERNAME") or None,
                miq_password=os.environ.get("MIQ_PASSWORD") or None,
                miq_client_id=os.environ.get("MIQ_CLIENT_ID") or None,
                miq_client_secret=os.environ.get("MIQ_CLIENT_SECRET") or None,
                keycloak_url=os.environ.get("KEYCLOAK_URL") or None,
                keycloak_realm=os.environ.get("KEYCLOAK_REALM") or None,
                catalog=os.environ.get("MIRROR_CATALOG") or None,
                interval_seconds=get_int("MIRROR_INTERVAL", DEFAULT_MIRROR_INTERVAL_SECONDS),
            ),
        )
