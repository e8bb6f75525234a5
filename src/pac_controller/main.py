"""Main entry point for the PAC controller.

Loads configuration and the IBM Cloud credential, seeds the resource store
from the manifests directory and runs the controller manager until SIGTERM
or SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .credentials import CredentialError, KeycloakPasswordCredential, get_iam_credential
from .manageiq import ServiceMirrorClient
from .manager import Manager
from .manifests import ManifestLoadError, load_manifests, seed_store
from .mirror import MirrorSync
from .scope import GatewayFactory
from .store import InMemoryStore

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(debug: bool = False) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if not debug:
        # azure-core logs every request and response at INFO
        logging.getLogger("azure").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_mirror(config: Config, store: InMemoryStore) -> MirrorSync | None:
    mirror = config.mirror
    if not mirror.enabled:
        return None
    credential = KeycloakPasswordCredential(
        mirror.keycloak_url or "",
        mirror.keycloak_realm or "",
        mirror.miq_client_id or "",
        mirror.miq_client_secret or "",
        mirror.miq_username or "",
        mirror.miq_password or "",
    )
    client = ServiceMirrorClient(
        credential, mirror.miq_url or "", timeout_seconds=config.api_timeout_seconds
    )
    return MirrorSync(store, client, config, credential=credential)


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code: 0 on clean shutdown, 1 on configuration or runtime
        failure, 2 when no usable credential is available.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.debug)
    logger.info(
        "Starting PAC controller",
        extra={
            "namespace": config.namespace,
            "manifests_dir": str(config.manifests_dir) if config.manifests_dir else None,
            "ingress_enabled": config.ingress_enabled,
            "mirror_enabled": config.mirror.enabled,
        },
    )

    try:
        credential = get_iam_credential()
    except CredentialError as e:
        logger.critical("No usable IBM Cloud credential", extra={"error": str(e)})
        return 2

    store = InMemoryStore()
    if config.manifests_dir is not None:
        try:
            manifests = load_manifests(config.manifests_dir, config.namespace)
        except ManifestLoadError as e:
            logger.error(
                "Manifest loading failed",
                extra={"error": str(e), "manifests_dir": str(config.manifests_dir)},
            )
            credential.close()
            return 1
        seeded = seed_store(store, manifests)
        logger.info("Seeded resource store", extra={"resources": seeded})

    mirror = build_mirror(config, store)
    manager = Manager(store, GatewayFactory(credential, config), config, mirror=mirror)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        if mirror is not None:
            mirror.close()
        credential.close()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
