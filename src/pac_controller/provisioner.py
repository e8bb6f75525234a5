"""VM provisioning: discover-or-create, status classification and teardown.

Idempotency rests on one rule: before creating anything, list the
workspace's instances and adopt one whose server name equals the service
name. No other "creation in progress" marker is persisted, so a crash
between the create call and the status write is recovered by adoption on
the next pass.
"""

from __future__ import annotations

import base64
import logging
import secrets
import string

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .conditions import StepResult, result_from_exception
from .models import (
    Capacity,
    Catalog,
    Service,
    ServiceState,
    ServiceStatus,
    VMStatus,
    access_info,
)
from .powervs import NETWORK_TYPE_PUBLIC, Instance, InstanceCreateRequest
from .scope import ServiceScope
from .validation import ValidationError, parse_processors, validate_vm_capacity

logger = logging.getLogger(__name__)

PUBLIC_NETWORK_PREFIX = "pac-public-network"
PUBLIC_NETWORK_DNS_SERVERS = ("9.9.9.9", "1.1.1.1")
NETWORK_NAME_SUFFIX_LENGTH = 5

INSTANCE_STATUS_ACTIVE = "ACTIVE"
INSTANCE_STATUS_ERROR = "ERROR"

MESSAGE_IN_PROGRESS = "vm creation started, will update the access info once vm is ready"


class InstanceCreateError(Exception):
    """Raised when the create call does not return exactly one instance."""

    pass


def generate_network_name() -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(NETWORK_NAME_SUFFIX_LENGTH))
    return f"{PUBLIC_NETWORK_PREFIX}-{suffix}"


def encode_user_data(ssh_keys: list[str]) -> str:
    """Base64 of the newline-joined SSH keys, as cloud-init user data."""
    return base64.b64encode("\n".join(ssh_keys).encode("utf-8")).decode("ascii")


def apply_instance_status(
    status: ServiceStatus, instance: Instance, poll_interval: float | None = None
) -> StepResult:
    """Record an observed instance and classify it into the service state machine.

    ``ACTIVE`` means created; ``ERROR`` is a terminal failure; anything else
    is still building and must be polled again.
    """
    status.vm.instance_id = instance.id
    status.vm.state = instance.status
    for network in instance.networks:
        if network.ip_address or network.external_ip:
            status.vm.ip_address = network.ip_address
            status.vm.external_ip_address = network.external_ip
            break

    if instance.status == INSTANCE_STATUS_ACTIVE:
        status.successful = True
        status.state = ServiceState.CREATED
        status.access_info = access_info(status.vm)
        status.message = ""
        return StepResult.success()

    if instance.status == INSTANCE_STATUS_ERROR:
        status.state = ServiceState.FAILED
        if instance.fault:
            status.message = f"vm creation failed with reason: {instance.fault}"
        else:
            status.message = "vm creation failed, no reason reported by the provider"
        status.access_info = ""
        return StepResult.terminal(status.message)

    status.state = ServiceState.IN_PROGRESS
    status.message = MESSAGE_IN_PROGRESS
    return StepResult.retry(status.message, requeue_after=poll_interval)


def requested_capacity(service: Service, catalog: Catalog) -> Capacity:
    """Service shape with unset fields taken from the catalog's VM shape,
    checked against the catalog envelope.

    Raises:
        ValidationError: If the catalog has no VM section.
        CapacityValidationError: If the shape exceeds the envelope.
    """
    vm = catalog.spec.vm
    if vm is None:
        raise ValidationError(f"catalog {catalog.name} has no vm section")
    requested = service.spec.capacity
    shape = Capacity(
        cpu=requested.cpu or vm.capacity.cpu,
        memory=requested.memory or vm.capacity.memory,
    )
    return validate_vm_capacity(catalog.spec.capacity, shape)


class VMProvisioner:
    """Creates, observes and deletes the instance backing one service."""

    def __init__(self, scope: ServiceScope, poll_interval: float | None = None) -> None:
        self._scope = scope
        self._poll_interval = poll_interval

    @property
    def _status(self) -> ServiceStatus:
        return self._scope.service.status

    def requested_capacity(self) -> Capacity:
        return requested_capacity(self._scope.service, self._scope.catalog)

    async def ensure(self) -> StepResult:
        """Make sure the instance exists and record its current status."""
        if not self._status.vm.instance_id:
            try:
                await self._create_or_adopt()
            except ValidationError as e:
                return StepResult.terminal(f"error creating vm: {e}")
            except InstanceCreateError as e:
                return StepResult.terminal(str(e))
            except (AzureError, TimeoutError) as e:
                return result_from_exception("error creating vm", e)

        instance_id = self._status.vm.instance_id
        try:
            instance = await self._scope.call(
                "Get instance", self._scope.gateways.compute.get_instance, instance_id
            )
        except ResourceNotFoundError:
            # Never re-create under a recorded id: the instance id is set once
            self._status.state = ServiceState.FAILED
            self._status.message = f"vm {instance_id} no longer exists"
            self._status.access_info = ""
            return StepResult.terminal(self._status.message)
        except (AzureError, TimeoutError) as e:
            return result_from_exception("error get vm", e)

        return apply_instance_status(self._status, instance, self._poll_interval)

    async def teardown(self) -> StepResult:
        instance_id = self._status.vm.instance_id
        if not instance_id:
            logger.info(
                "vm instanceID is empty, nothing to clean up",
                extra={"service": self._scope.service.key},
            )
            return StepResult.success()

        try:
            await self._scope.call(
                "Delete instance", self._scope.gateways.compute.delete_instance, instance_id
            )
        except ResourceNotFoundError:
            logger.info(
                "Instance already gone",
                extra={"service": self._scope.service.key, "instance_id": instance_id},
            )
        except (AzureError, TimeoutError) as e:
            return result_from_exception("error cleaning up vm", e)

        self._status.vm = VMStatus()
        self._status.access_info = ""
        return StepResult.success()

    async def _create_or_adopt(self) -> None:
        service = self._scope.service
        compute = self._scope.gateways.compute

        # Validated before any external call
        shape = self.requested_capacity()
        processors = parse_processors(shape.cpu)

        instances = await self._scope.call("List instances", compute.list_instances)
        for instance in instances:
            if instance.name == service.name:
                logger.info(
                    "vm already exists, hence skipping the vm creation",
                    extra={"service": service.key, "instance_id": instance.id},
                )
                self._status.vm.instance_id = instance.id
                return

        vm = self._scope.catalog.spec.vm
        assert vm is not None
        network_id = await self._select_network()
        image = await self._scope.call("Get image", compute.get_image_by_name, vm.image)

        request = InstanceCreateRequest(
            server_name=service.name,
            image_id=image.id,
            network_ids=(network_id,),
            memory=float(shape.memory),
            processors=processors,
            system_type=vm.system_type,
            processor_type=vm.processor_type,
            user_data=encode_user_data(service.spec.ssh_keys),
        )
        created = await self._scope.call("Create instance", compute.create_instance, request)
        if len(created) != 1:
            raise InstanceCreateError(
                f"error creating vm, expected 1 vm to be created, got {len(created)}"
            )

        self._status.vm.instance_id = created[0].id
        self._status.message = MESSAGE_IN_PROGRESS
        logger.info(
            "vm creation started",
            extra={"service": service.key, "instance_id": created[0].id},
        )

    async def _select_network(self) -> str:
        """Network id for a new instance.

        A pinned network is resolved by name. Otherwise the first public
        network with free addresses is used, and a new public network is
        created when none has any.
        """
        compute = self._scope.gateways.compute
        vm = self._scope.catalog.spec.vm
        assert vm is not None

        if vm.network:
            network = await self._scope.call("Get network", compute.get_network_by_name, vm.network)
            return network.id

        networks = await self._scope.call("List networks", compute.list_networks, NETWORK_TYPE_PUBLIC)
        for candidate in networks:
            network = await self._scope.call("Get network", compute.get_network, candidate.id)
            if (network.available_ips or 0) > 0:
                return network.id

        name = generate_network_name()
        logger.info("No public network with free addresses, creating one", extra={"network": name})
        network = await self._scope.call(
            "Create network",
            compute.create_network,
            name,
            NETWORK_TYPE_PUBLIC,
            list(PUBLIC_NETWORK_DNS_SERVERS),
        )
        return network.id
