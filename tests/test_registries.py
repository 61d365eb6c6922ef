import pytest

from api.config.settings import Settings
from api.v1.core.registries import JobRegistry, Registry, job_registry
from api.v1.infra.jobs.handlers import (
    MaintenanceCleanupHandler,
    PushNoteHandler,
    SlackNotificationHandler,
    WebhookDeliveryHandler,
)
from api.v1.infra.jobs.registry_init import (
    DELIVER_WEBHOOK,
    MAINTENANCE_CLEANUP,
    PUSH_NOTE,
    SLACK_NOTIFICATION,
    register_job_handlers,
)


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    # Test empty registry
    assert registry.list() == []

    # Test register and get
    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.has("test_impl")
    assert registry.list() == ["test_impl"]

    # Test KeyError for missing implementation
    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze():
    """Frozen registries reject new registrations but still resolve."""
    registry = Registry[str]("Test")
    registry.register("impl1", "value1")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("impl2", "value2")
    assert registry.get("impl1") == "value1"


def test_registry_reregister_replaces():
    registry = Registry[str]("Test")
    registry.register("impl", "old")
    registry.register("impl", "new")

    assert registry.get("impl") == "new"
    assert registry.list() == ["impl"]


def test_job_handlers_registered():
    register_job_handlers(Settings())

    assert isinstance(job_registry.get(DELIVER_WEBHOOK), WebhookDeliveryHandler)
    assert isinstance(job_registry.get(SLACK_NOTIFICATION), SlackNotificationHandler)
    assert isinstance(job_registry.get(PUSH_NOTE), PushNoteHandler)
    assert isinstance(job_registry.get(MAINTENANCE_CLEANUP), MaintenanceCleanupHandler)


def test_job_registry_is_isolated_per_instance():
    registry = JobRegistry()

    assert registry.list() == []
    with pytest.raises(KeyError, match="No job implementation registered"):
        registry.get(PUSH_NOTE)
