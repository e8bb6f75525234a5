"""Tests for the service reconciler state machine."""

import dataclasses
from datetime import UTC, datetime, timedelta
from typing import TypeVar

import pytest
from azure.core.exceptions import HttpResponseError
from cloud_mock import MockCloud, MockHttpResponse, MockTokenCredential, make_catalog, make_service

from pac_controller.conditions import Result
from pac_controller.config import Config
from pac_controller.models import SERVICE_FINALIZER, Resource, ServiceState
from pac_controller.reconciler import MESSAGE_CATALOG_RETIRED, ServiceReconciler
from pac_controller.scope import GatewayFactory
from pac_controller.store import KIND_CATALOG, KIND_SERVICE, ConflictError, InMemoryStore, NotFoundError

R = TypeVar("R", bound=Resource)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class ConflictOnceStore(InMemoryStore):
    """Store whose first status write loses a race."""

    def __init__(self) -> None:
        super().__init__()
        self.conflicts = 1

    def update_status(self, resource: R) -> R:
        if self.conflicts:
            self.conflicts -= 1
            raise ConflictError("modified concurrently")
        return super().update_status(resource)


@pytest.fixture
def reconciler(store: InMemoryStore, cloud: MockCloud, config: Config) -> ServiceReconciler:
    return ServiceReconciler(store, cloud.factory, config, clock=lambda: NOW)


async def provision(
    store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler, ports: list[int] | None = None
) -> str:
    """Drive a service to CREATED; returns its instance id."""
    cloud.compute.add_network("pub-1")
    store.create(make_catalog(ready=True))
    store.create(make_service(ports=ports))

    await reconciler.reconcile("default", "my-vm")
    await reconciler.reconcile("default", "my-vm")
    instance_id = store.get_service("default", "my-vm").status.vm.instance_id
    cloud.compute.set_attachment(instance_id, ip_address="10.0.0.5")
    cloud.compute.set_instance(instance_id, status="ACTIVE")
    await reconciler.reconcile("default", "my-vm")
    return instance_id


class TestProvisioning:
    """Tests for the path from NEW to CREATED."""

    @pytest.mark.asyncio
    async def test_first_pass_adds_finalizer_and_owner(
        self, store: InMemoryStore, reconciler: ServiceReconciler
    ) -> None:
        """Test that a new service is claimed and marked NEW."""
        store.create(make_catalog(ready=True))
        store.create(make_service())

        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.now()
        assert service.has_finalizer(SERVICE_FINALIZER)
        assert service.metadata.owner_references[0].name == "vm-small"
        assert service.status.state == ServiceState.NEW

    @pytest.mark.asyncio
    async def test_build_polls_at_in_progress_interval(
        self,
        store: InMemoryStore,
        cloud: MockCloud,
        reconciler: ServiceReconciler,
        config: Config,
    ) -> None:
        """Test that a building VM is polled without failing the service."""
        cloud.compute.add_network("pub-1")
        store.create(make_catalog(ready=True))
        store.create(make_service())
        await reconciler.reconcile("default", "my-vm")

        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.after(config.in_progress_requeue_seconds)
        assert service.status.state == ServiceState.IN_PROGRESS
        assert service.status.vm.instance_id

    @pytest.mark.asyncio
    async def test_happy_path(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that a service ends CREATED with access info and ingress."""
        await provision(store, cloud, reconciler, ports=[22])

        service = store.get_service("default", "my-vm")
        assert service.status.state == ServiceState.CREATED
        assert service.status.successful
        assert service.status.vm.ip_address == "10.0.0.5"
        assert service.status.access_info == "Internal IP: 10.0.0.5"
        assert service.status.ingress_endpoint == cloud.lb.hostname
        assert service.status.ports[0].backend_pool == "my-vm-22"
        assert cloud.compute.call_count("create_instance") == 1

    @pytest.mark.asyncio
    async def test_steady_state_is_idempotent(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that reconciling a CREATED service creates nothing new."""
        await provision(store, cloud, reconciler, ports=[22])

        result = await reconciler.reconcile("default", "my-vm")

        assert result == Result.done()
        assert cloud.compute.call_count("create_instance") == 1
        assert cloud.lb.call_count("create_pool") == 1
        assert cloud.lb.call_count("create_listener") == 1

    @pytest.mark.asyncio
    async def test_provider_error_is_failed(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that an instance in ERROR fails the service for good."""
        cloud.compute.add_network("pub-1")
        store.create(make_catalog(ready=True))
        store.create(make_service())
        await reconciler.reconcile("default", "my-vm")
        await reconciler.reconcile("default", "my-vm")
        instance_id = store.get_service("default", "my-vm").status.vm.instance_id
        cloud.compute.set_instance(instance_id, status="ERROR", fault="no capacity")

        result = await reconciler.reconcile("default", "my-vm")
        again = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.done()
        assert again == Result.done()
        assert service.status.state == ServiceState.FAILED
        assert "no capacity" in service.status.message

    @pytest.mark.asyncio
    async def test_capacity_over_envelope_is_error(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that a rejected shape is recorded and not retried."""
        store.create(make_catalog(ready=True))
        store.create(make_service(cpu="16"))
        await reconciler.reconcile("default", "my-vm")

        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.done()
        assert service.status.state == ServiceState.ERROR
        assert "capacity" in service.status.message
        assert cloud.compute.call_count("create_instance") == 0


class TestCatalogGates:
    """Tests for catalog readiness and retirement gating."""

    @pytest.mark.asyncio
    async def test_retired_catalog(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that a retired catalog blocks provisioning."""
        store.create(make_catalog(ready=True, retired=True))
        store.create(make_service())

        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.done()
        assert service.status.state == ServiceState.ERROR
        assert "retired" in service.status.message
        assert service.status.message == MESSAGE_CATALOG_RETIRED
        assert cloud.compute.calls == []

    @pytest.mark.asyncio
    async def test_unknown_zone_is_error(self, store: InMemoryStore, config: Config) -> None:
        """Test that a catalog CRN in an unmapped zone puts the service in ERROR."""
        reconciler = ServiceReconciler(
            store, GatewayFactory(MockTokenCredential(), config), config, clock=lambda: NOW
        )
        crn = (
            "crn:v1:bluemix:public:power-iaas:xyz01:a/acc0123456789:"
            "0c5bd5e3-4b1c-4c2d-9e4f-abcdef012345::"
        )
        store.create(make_catalog(ready=True, crn=crn))
        store.create(make_service())

        await reconciler.reconcile("default", "my-vm")
        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.done()
        assert service.status.state == ServiceState.ERROR
        assert service.status.message == "unknown PowerVS zone: xyz01"

    @pytest.mark.asyncio
    async def test_not_ready_then_ready(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that a service waits in ERROR until its catalog is ready."""
        cloud.compute.add_network("pub-1")
        store.create(make_catalog(ready=False))
        store.create(make_service())

        await reconciler.reconcile("default", "my-vm")
        assert store.get_service("default", "my-vm").status.state == ServiceState.ERROR

        catalog = store.get_catalog("default", "vm-small")
        catalog.status.ready = True
        store.update_status(catalog)
        await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert service.status.state == ServiceState.IN_PROGRESS
        assert cloud.compute.call_count("create_instance") == 1

    @pytest.mark.asyncio
    async def test_created_survives_retirement(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that retiring a catalog does not disturb running services."""
        await provision(store, cloud, reconciler)
        catalog = store.get_catalog("default", "vm-small")
        catalog.spec.retired = True
        store.update(catalog)

        await reconciler.reconcile("default", "my-vm")

        assert store.get_service("default", "my-vm").status.state == ServiceState.CREATED

    @pytest.mark.asyncio
    async def test_missing_catalog(self, store: InMemoryStore, reconciler: ServiceReconciler) -> None:
        """Test that an unknown catalog puts the service in ERROR."""
        store.create(make_service())

        await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert service.status.state == ServiceState.ERROR
        assert service.status.message == "catalog vm-small not found"


class TestExpiry:
    """Tests for expiry handling in the reconciler."""

    @pytest.mark.asyncio
    async def test_expired_service_torn_down(
        self, store: InMemoryStore, cloud: MockCloud, config: Config
    ) -> None:
        """Test that a service past expiry is marked and its VM removed."""
        clock = {"now": NOW}
        reconciler = ServiceReconciler(store, cloud.factory, config, clock=lambda: clock["now"])
        store.create(make_catalog(ready=True))
        cloud.compute.add_network("pub-1")
        store.create(make_service(expiry=NOW + timedelta(days=1)))
        await reconciler.reconcile("default", "my-vm")
        await reconciler.reconcile("default", "my-vm")
        instance_id = store.get_service("default", "my-vm").status.vm.instance_id

        clock["now"] = NOW + timedelta(days=2)
        first = await reconciler.reconcile("default", "my-vm")
        second = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert first == Result.now()
        assert second == Result.done()
        assert service.status.state == ServiceState.EXPIRED
        assert service.status.expired
        assert service.status.vm.instance_id == ""
        assert instance_id not in cloud.compute.instances


class TestDeletion:
    """Tests for teardown on deletion."""

    @pytest.mark.asyncio
    async def test_teardown_then_finalizer_removed(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that deletion removes listener, pool and VM before the resource."""
        instance_id = await provision(store, cloud, reconciler, ports=[22])
        store.delete(KIND_SERVICE, "default", "my-vm")

        result = await reconciler.reconcile("default", "my-vm")

        assert result == Result.done()
        assert instance_id not in cloud.compute.instances
        assert cloud.lb.pools == {}
        assert cloud.lb.listeners == {}
        with pytest.raises(NotFoundError):
            store.get_service("default", "my-vm")

    @pytest.mark.asyncio
    async def test_failed_teardown_keeps_finalizer(
        self,
        store: InMemoryStore,
        cloud: MockCloud,
        reconciler: ServiceReconciler,
        config: Config,
    ) -> None:
        """Test that a failed delete retries and blocks removal."""
        await provision(store, cloud, reconciler)
        store.delete(KIND_SERVICE, "default", "my-vm")
        cloud.compute.fail_next("delete_instance", HttpResponseError(response=MockHttpResponse(500)))

        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.after(config.retry_delay_seconds)
        assert service.has_finalizer(SERVICE_FINALIZER)
        assert service.status.message.startswith("error deleting the service")

        retry = await reconciler.reconcile("default", "my-vm")
        assert retry == Result.done()
        with pytest.raises(NotFoundError):
            store.get_service("default", "my-vm")

    @pytest.mark.asyncio
    async def test_never_provisioned(
        self, store: InMemoryStore, cloud: MockCloud, reconciler: ServiceReconciler
    ) -> None:
        """Test that a service without infrastructure is released at once."""
        store.create(make_catalog(ready=True, retired=True))
        store.create(make_service())
        await reconciler.reconcile("default", "my-vm")
        store.delete(KIND_SERVICE, "default", "my-vm")

        await reconciler.reconcile("default", "my-vm")

        assert cloud.compute.calls == []
        with pytest.raises(NotFoundError):
            store.get_service("default", "my-vm")

    @pytest.mark.asyncio
    async def test_catalog_gone_with_infrastructure_retries(
        self,
        store: InMemoryStore,
        cloud: MockCloud,
        reconciler: ServiceReconciler,
        config: Config,
    ) -> None:
        """Test that teardown without a catalog keeps the finalizer."""
        await provision(store, cloud, reconciler)
        store.delete(KIND_CATALOG, "default", "vm-small")
        store.delete(KIND_SERVICE, "default", "my-vm")

        result = await reconciler.reconcile("default", "my-vm")

        assert result == Result.after(config.retry_delay_seconds)
        assert store.get_service("default", "my-vm").has_finalizer(SERVICE_FINALIZER)


class TestConflicts:
    """Tests for stale writes."""

    @pytest.mark.asyncio
    async def test_conflict_requeues_immediately(self, cloud: MockCloud, config: Config) -> None:
        """Test that a lost write race is retried at once."""
        store = ConflictOnceStore()
        reconciler = ServiceReconciler(store, cloud.factory, config, clock=lambda: NOW)
        store.create(make_catalog(ready=True))
        store.create(make_service())

        result = await reconciler.reconcile("default", "my-vm")

        assert result == Result.now()
        assert store.get_service("default", "my-vm").status.state is None

    @pytest.mark.asyncio
    async def test_missing_service(self, reconciler: ServiceReconciler) -> None:
        """Test that a deleted service is done."""
        assert await reconciler.reconcile("default", "gone") == Result.done()


class TestDeadlines:
    """Tests for external calls that run past the API timeout."""

    @pytest.mark.asyncio
    async def test_slow_call_requeues(
        self,
        store: InMemoryStore,
        cloud: MockCloud,
        config: Config,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a timed out call is retried after the retry delay, not failed."""
        monkeypatch.setattr("pac_controller.config.MIN_API_TIMEOUT_SECONDS", 0)
        fast = dataclasses.replace(config, api_timeout_seconds=0.05)  # type: ignore[arg-type]
        reconciler = ServiceReconciler(store, cloud.factory, fast, clock=lambda: NOW)
        cloud.compute.add_network("pub-1")
        cloud.compute.stall_next("list_instances", 0.5)
        store.create(make_catalog(ready=True))
        store.create(make_service())
        await reconciler.reconcile("default", "my-vm")

        result = await reconciler.reconcile("default", "my-vm")

        service = store.get_service("default", "my-vm")
        assert result == Result.after(config.retry_delay_seconds)
        assert service.status.state == ServiceState.IN_PROGRESS
        assert service.status.message.startswith("error creating vm")
        assert cloud.compute.call_count("create_instance") == 0

        # The next attempt, without the stall, proceeds normally
        result = await reconciler.reconcile("default", "my-vm")

        assert result == Result.after(config.in_progress_requeue_seconds)
        assert store.get_service("default", "my-vm").status.state == ServiceState.IN_PROGRESS
