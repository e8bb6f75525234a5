"""Tests for the in-memory resource store."""

import pytest
from cloud_mock import make_catalog, make_service

from pac_controller.models import SERVICE_FINALIZER, Lifecycle, ServiceState
from pac_controller.store import (
    KIND_CATALOG,
    KIND_SERVICE,
    AlreadyExistsError,
    ConflictError,
    EventType,
    ImmutableFieldError,
    InMemoryStore,
    NotFoundError,
    ResourceEvent,
)


@pytest.fixture
def events(store: InMemoryStore) -> list[ResourceEvent]:
    received: list[ResourceEvent] = []
    store.subscribe(received.append)
    return received


class TestCreateAndRead:
    """Tests for create/get/list."""

    def test_create_assigns_metadata(self, store: InMemoryStore) -> None:
        """Test that create sets uid, version, generation and timestamp."""
        created = store.create(make_service())

        assert created.metadata.uid
        assert created.metadata.resource_version
        assert created.metadata.generation == 1
        assert created.metadata.creation_timestamp is not None

    def test_create_duplicate(self, store: InMemoryStore) -> None:
        """Test that creating a taken name raises AlreadyExistsError."""
        store.create(make_service())

        with pytest.raises(AlreadyExistsError):
            store.create(make_service())

    def test_get_returns_copies(self, store: InMemoryStore) -> None:
        """Test that mutating a read copy does not change the store."""
        store.create(make_service())

        copy = store.get_service("default", "my-vm")
        copy.status.message = "mutated"

        assert store.get_service("default", "my-vm").status.message == ""

    def test_get_missing(self, store: InMemoryStore) -> None:
        """Test that a missing resource raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.get_catalog("default", "nope")

    def test_list_by_namespace(self, store: InMemoryStore) -> None:
        """Test namespace filtering of list calls."""
        store.create(make_service(name="a"))
        store.create(make_service(name="b", namespace="other"))

        assert [s.name for s in store.list_services("default")] == ["a"]
        assert len(store.list_services()) == 2

    def test_services_for_catalog(self, store: InMemoryStore) -> None:
        """Test reverse lookup of services referencing a catalog."""
        catalog = store.create(make_catalog())
        store.create(make_service(name="a"))
        store.create(make_service(name="b", catalog="other"))

        assert [s.name for s in store.services_for_catalog(catalog)] == ["a"]


class TestUpdate:
    """Tests for update and update_status."""

    def test_stale_version_conflicts(self, store: InMemoryStore) -> None:
        """Test that a write based on an old version raises ConflictError."""
        store.create(make_service())
        first = store.get_service("default", "my-vm")
        second = store.get_service("default", "my-vm")

        first.spec.display_name = "renamed"
        store.update(first)

        second.spec.display_name = "other"
        with pytest.raises(ConflictError):
            store.update(second)

    def test_update_ignores_status(self, store: InMemoryStore) -> None:
        """Test that update writes spec and metadata only."""
        store.create(make_service())
        service = store.get_service("default", "my-vm")
        service.status.state = ServiceState.CREATED
        service.add_finalizer(SERVICE_FINALIZER)

        updated = store.update(service)

        assert updated.status.state is None
        assert updated.has_finalizer(SERVICE_FINALIZER)

    def test_generation_bumps_on_spec_change_only(self, store: InMemoryStore) -> None:
        """Test that metadata-only writes keep the generation."""
        store.create(make_service())
        service = store.get_service("default", "my-vm")
        service.add_finalizer(SERVICE_FINALIZER)
        service = store.update(service)
        assert service.metadata.generation == 1

        service.spec.display_name = "renamed"
        service = store.update(service)
        assert service.metadata.generation == 2

    def test_immutable_fields(self, store: InMemoryStore) -> None:
        """Test that user and catalog cannot change after creation."""
        store.create(make_service())
        service = store.get_service("default", "my-vm")
        service.spec.user_id = "someone-else"

        with pytest.raises(ImmutableFieldError):
            store.update(service)

    def test_update_status_writes_status_only(
        self, store: InMemoryStore, events: list[ResourceEvent]
    ) -> None:
        """Test that status writes persist status and notify nobody."""
        store.create(make_service())
        events.clear()
        service = store.get_service("default", "my-vm")
        service.status.state = ServiceState.IN_PROGRESS
        service.spec.display_name = "ignored"

        updated = store.update_status(service)

        assert updated.status.state == ServiceState.IN_PROGRESS
        assert updated.spec.display_name == "my-vm"
        assert updated.metadata.resource_version != service.metadata.resource_version
        assert events == []


class TestDelete:
    """Tests for deletion and finalizers."""

    def test_delete_without_finalizers_removes(
        self, store: InMemoryStore, events: list[ResourceEvent]
    ) -> None:
        """Test that a resource without finalizers disappears at once."""
        store.create(make_catalog())

        store.delete(KIND_CATALOG, "default", "vm-small")

        with pytest.raises(NotFoundError):
            store.get_catalog("default", "vm-small")
        assert events[-1] == ResourceEvent(EventType.DELETED, KIND_CATALOG, "default", "vm-small")

    def test_delete_with_finalizer_marks_pending(self, store: InMemoryStore) -> None:
        """Test that finalizers keep the resource with a deletion timestamp."""
        service = make_service()
        service.add_finalizer(SERVICE_FINALIZER)
        store.create(service)

        store.delete(KIND_SERVICE, "default", "my-vm")

        pending = store.get_service("default", "my-vm")
        assert pending.lifecycle == Lifecycle.PENDING_DELETION

    def test_removing_last_finalizer_completes_deletion(self, store: InMemoryStore) -> None:
        """Test that the resource goes away with its last finalizer."""
        service = make_service()
        service.add_finalizer(SERVICE_FINALIZER)
        store.create(service)
        store.delete(KIND_SERVICE, "default", "my-vm")

        pending = store.get_service("default", "my-vm")
        pending.remove_finalizer(SERVICE_FINALIZER)
        store.update(pending)

        with pytest.raises(NotFoundError):
            store.get_service("default", "my-vm")

    def test_deletion_timestamp_cannot_be_cleared(self, store: InMemoryStore) -> None:
        """Test that update keeps a pending deletion."""
        service = make_service()
        service.add_finalizer(SERVICE_FINALIZER)
        store.create(service)
        store.delete(KIND_SERVICE, "default", "my-vm")

        pending = store.get_service("default", "my-vm")
        pending.metadata.deletion_timestamp = None
        updated = store.update(pending)

        assert updated.lifecycle == Lifecycle.PENDING_DELETION

    def test_delete_missing(self, store: InMemoryStore) -> None:
        """Test that deleting an unknown resource raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.delete(KIND_SERVICE, "default", "nope")

    def test_events_for_spec_changes(
        self, store: InMemoryStore, events: list[ResourceEvent]
    ) -> None:
        """Test that create, update and delete notify subscribers."""
        store.create(make_service())
        service = store.get_service("default", "my-vm")
        service.spec.display_name = "renamed"
        store.update(service)
        store.delete(KIND_SERVICE, "default", "my-vm")

        assert [e.type for e in events] == [EventType.ADDED, EventType.MODIFIED, EventType.DELETED]
