"""Tests for resolving the network details of a provisioned instance."""

import pytest
from cloud_mock import MockCloud, make_catalog, make_service

from pac_controller.conditions import Condition
from pac_controller.models import ServiceState
from pac_controller.network import MESSAGE_NO_IP, MESSAGE_NO_LEASE, MESSAGE_NO_NETWORK, NetworkResolver
from pac_controller.powervs import ATTACHMENT_DYNAMIC, ATTACHMENT_FIXED, InstanceNetwork
from pac_controller.scope import ServiceScope


@pytest.fixture
def scope(cloud: MockCloud) -> ServiceScope:
    catalog = make_catalog(ready=True)
    return ServiceScope(
        service=make_service(),
        catalog=catalog,
        gateways=cloud.factory.for_catalog(catalog),
        timeout_seconds=5,
    )


class TestNetworkResolver:
    """Tests for NetworkResolver.resolve."""

    @pytest.mark.asyncio
    async def test_fixed_address(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that a static attachment's address is recorded."""
        instance = cloud.compute.add_instance("my-vm", ip_address="192.168.10.4")
        scope.service.status.vm.instance_id = instance.id
        scope.service.status.state = ServiceState.CREATED

        result = await NetworkResolver(scope).resolve()

        vm = scope.service.status.vm
        assert result.ok
        assert vm.ip_address == "192.168.10.4"
        assert vm.mac_address == "fa:16:3e:00:00:01"
        assert vm.network_name == "existing"
        assert scope.service.status.access_info == "Internal IP: 192.168.10.4"

    @pytest.mark.asyncio
    async def test_fixed_without_address_waits(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that a missing static address is retried, not failed."""
        instance = cloud.compute.add_instance("my-vm")
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        assert result.condition == Condition.RETRYABLE
        assert result.message == MESSAGE_NO_IP

    @pytest.mark.asyncio
    async def test_external_ip(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that a public address is recorded as external."""
        instance = cloud.compute.add_instance("my-vm", ip_address="192.168.10.4")
        cloud.compute.set_attachment(instance.id, external_ip="52.116.0.9")
        scope.service.status.vm.instance_id = instance.id
        scope.service.status.state = ServiceState.CREATED

        await NetworkResolver(scope).resolve()

        assert scope.service.status.vm.external_ip_address == "52.116.0.9"
        assert scope.service.status.access_info.startswith("External IP: 52.116.0.9")

    @pytest.mark.asyncio
    async def test_dhcp_lease(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that a dynamic address is found in the lease table by MAC."""
        instance = cloud.compute.add_instance("my-vm")
        cloud.compute.set_attachment(instance.id, type=ATTACHMENT_DYNAMIC)
        cloud.compute.add_dhcp_server("other", {"fa:16:3e:00:00:01": "10.9.9.9"})
        cloud.compute.add_dhcp_server("existing", {"fa:16:3e:00:00:01": "10.1.1.7"})
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        assert result.ok
        assert scope.service.status.vm.ip_address == "10.1.1.7"
        # Only the server on the attached network is fetched
        assert cloud.compute.call_count("get_dhcp_server") == 1

    @pytest.mark.asyncio
    async def test_dhcp_no_lease_yet(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that a missing lease is retried."""
        instance = cloud.compute.add_instance("my-vm")
        cloud.compute.set_attachment(instance.id, type=ATTACHMENT_DYNAMIC)
        cloud.compute.add_dhcp_server("existing", {"fa:16:3e:99:99:99": "10.1.1.8"})
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        assert result.condition == Condition.RETRYABLE
        assert result.message == MESSAGE_NO_LEASE
        assert scope.service.status.vm.ip_address == ""

    @pytest.mark.asyncio
    async def test_no_attachments(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that an instance without networks is retried."""
        instance = cloud.compute.add_instance("my-vm")
        cloud.compute.set_instance(instance.id, networks=())
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        assert result.condition == Condition.RETRYABLE
        assert result.message == MESSAGE_NO_NETWORK

    @pytest.mark.asyncio
    async def test_no_instance(self, scope: ServiceScope) -> None:
        """Test that there is nothing to resolve before an instance exists."""
        result = await NetworkResolver(scope).resolve()

        assert result.message == MESSAGE_NO_NETWORK

    @pytest.mark.asyncio
    async def test_skips_attachment_without_mac(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that a later fixed attachment is used when the first has no MAC."""
        instance = cloud.compute.add_instance("my-vm")
        cloud.compute.set_instance(
            instance.id,
            networks=(
                InstanceNetwork(network_id="n-1", network_name="priv", type=ATTACHMENT_DYNAMIC),
                InstanceNetwork(
                    network_id="n-2",
                    network_name="pub",
                    mac_address="fa:16:3e:00:00:02",
                    ip_address="192.168.1.9",
                    type=ATTACHMENT_FIXED,
                ),
            ),
        )
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        vm = scope.service.status.vm
        assert result.ok
        assert vm.ip_address == "192.168.1.9"
        assert vm.mac_address == "fa:16:3e:00:00:02"
        assert vm.network_name == "pub"

    @pytest.mark.asyncio
    async def test_first_resolvable_attachment_wins(
        self, cloud: MockCloud, scope: ServiceScope
    ) -> None:
        """Test that an attachment still waiting for its address is passed over."""
        instance = cloud.compute.add_instance("my-vm")
        cloud.compute.set_instance(
            instance.id,
            networks=(
                InstanceNetwork(
                    network_id="n-1",
                    network_name="priv",
                    mac_address="fa:16:3e:00:00:01",
                    type=ATTACHMENT_DYNAMIC,
                ),
                InstanceNetwork(
                    network_id="n-2",
                    network_name="pub",
                    mac_address="fa:16:3e:00:00:02",
                    ip_address="192.168.1.9",
                    type=ATTACHMENT_FIXED,
                ),
            ),
        )
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        assert result.ok
        assert scope.service.status.vm.network_name == "pub"

    @pytest.mark.asyncio
    async def test_no_attachment_with_mac(self, cloud: MockCloud, scope: ServiceScope) -> None:
        """Test that attachments without a MAC are not yet usable."""
        instance = cloud.compute.add_instance("my-vm", ip_address="192.168.10.4")
        cloud.compute.set_attachment(instance.id, mac_address="")
        scope.service.status.vm.instance_id = instance.id

        result = await NetworkResolver(scope).resolve()

        assert result.condition == Condition.RETRYABLE
        assert result.message == MESSAGE_NO_NETWORK
        assert scope.service.status.vm.ip_address == ""
