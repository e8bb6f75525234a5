"""Network resolution: MAC, IP and network name of a provisioned instance.

Static ("fixed") attachments carry their address on the instance. Dynamic
attachments get theirs from a DHCP server, so the IP is looked up in the
lease table of the DHCP server serving the attached network, by MAC.
Either way a missing address means "not yet", never a failure.

Every attachment with a MAC is tried in order; the first one that yields an
address is the one recorded.
"""

from __future__ import annotations

import logging

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .conditions import Condition, StepResult, result_from_exception
from .models import ServiceState, access_info
from .powervs import ATTACHMENT_DYNAMIC, InstanceNetwork
from .scope import ServiceScope

logger = logging.getLogger(__name__)

MESSAGE_NO_NETWORK = "network information is not yet available"
MESSAGE_NO_IP = "ip address is not yet assigned"
MESSAGE_NO_LEASE = "no lease found for the assigned mac address"


class NetworkResolver:
    """Fills ``status.vm`` network fields for one service."""

    def __init__(self, scope: ServiceScope) -> None:
        self._scope = scope

    async def resolve(self) -> StepResult:
        vm = self._scope.service.status.vm
        if not vm.instance_id:
            return StepResult.retry(MESSAGE_NO_NETWORK)

        compute = self._scope.gateways.compute
        try:
            instance = await self._scope.call("Get instance", compute.get_instance, vm.instance_id)
        except (AzureError, TimeoutError) as e:
            return result_from_exception("error get vm", e)

        # Attachments without a MAC are not usable yet
        candidates = [n for n in instance.networks if n.mac_address]
        if not candidates:
            return StepResult.retry(MESSAGE_NO_NETWORK)

        first_result: StepResult | None = None
        for attachment in candidates:
            result = await self._resolve_attachment(attachment)
            if result.ok:
                self._record(attachment)
                if self._scope.service.status.state == ServiceState.CREATED:
                    self._scope.service.status.access_info = access_info(vm)
                return result
            if result.condition != Condition.RETRYABLE:
                return result
            if first_result is None:
                first_result = result

        self._record(candidates[0])
        return first_result or StepResult.retry(MESSAGE_NO_NETWORK)

    def _record(self, attachment: InstanceNetwork) -> None:
        vm = self._scope.service.status.vm
        vm.mac_address = attachment.mac_address
        vm.network_name = attachment.network_name
        if attachment.external_ip:
            vm.external_ip_address = attachment.external_ip

    async def _resolve_attachment(self, attachment: InstanceNetwork) -> StepResult:
        if attachment.type == ATTACHMENT_DYNAMIC:
            return await self._resolve_dhcp(attachment)
        if attachment.ip_address:
            self._scope.service.status.vm.ip_address = attachment.ip_address
            return StepResult.success()
        return StepResult.retry(MESSAGE_NO_IP)

    async def _resolve_dhcp(self, attachment: InstanceNetwork) -> StepResult:
        vm = self._scope.service.status.vm
        compute = self._scope.gateways.compute

        if not attachment.mac_address or not attachment.network_name:
            return StepResult.retry(MESSAGE_NO_NETWORK)

        try:
            servers = await self._scope.call("List DHCP servers", compute.list_dhcp_servers)
            for server in servers:
                if server.network_name != attachment.network_name:
                    continue
                detail = await self._scope.call(
                    "Get DHCP server", compute.get_dhcp_server, server.id
                )
                for lease in detail.leases:
                    if lease.mac_address == attachment.mac_address and lease.ip_address:
                        vm.ip_address = lease.ip_address
                        logger.debug(
                            "Resolved address from DHCP lease",
                            extra={"service": self._scope.service.key, "dhcp_server": server.id},
                        )
                        return StepResult.success()
        except ResourceNotFoundError:
            # DHCP server went away between list and get
            return StepResult.retry(MESSAGE_NO_LEASE)
        except (AzureError, TimeoutError) as e:
            return result_from_exception("error resolving dhcp lease", e)

        return StepResult.retry(MESSAGE_NO_LEASE)
