import pytest

from marionette_automation.errors import TaskError
from marionette_automation.operations.service import ServiceOperation
from conftest import FakeService


def test_service_enable_and_start(fake_host, make_context):
    fake_host.services["nginx"] = FakeService()

    result = ServiceOperation({"name": "nginx", "enabled": True, "state": "running"}).run(make_context())

    assert result.changed is True
    assert result.details == "enabled, started"
    assert fake_host.services["nginx"].active is True
    assert fake_host.services["nginx"].enabled is True


def test_service_restart_only(fake_host, make_context):
    fake_host.services["app"] = FakeService(active=True, enabled=True)

    result = ServiceOperation({"name": "app", "restart": True}).run(make_context())

    assert result.details == "restarted"
    assert fake_host.services["app"].restarts == 1


def test_restarted_state_is_restart(fake_host, make_context):
    fake_host.services["app"] = FakeService(active=True)

    result = ServiceOperation({"name": "app", "state": "restarted"}).run(make_context())

    assert result.details == "restarted"


def test_service_no_changes_returns_noop(fake_host, make_context):
    fake_host.services["sshd"] = FakeService(active=True, enabled=True)

    result = ServiceOperation({"name": "sshd", "enabled": True, "state": "running"}).run(make_context())

    assert result.changed is False
    assert result.details == "noop"


def test_start_replaces_restart(fake_host, make_context):
    fake_host.services["app"] = FakeService()

    result = ServiceOperation({"name": "app", "state": "running", "restart": True}).run(make_context())

    assert result.details == "started"
    assert fake_host.services["app"].restarts == 0


def test_reload(fake_host, make_context):
    fake_host.services["nginx"] = FakeService(active=True)

    result = ServiceOperation({"name": "nginx", "reload": True}).run(make_context())

    assert result.details == "reloaded"
    assert fake_host.services["nginx"].reloads == 1


def test_without_systemctl_fails(fake_host, make_context):
    fake_host.binaries.discard("systemctl")

    with pytest.raises(TaskError, match="systemctl"):
        ServiceOperation({"name": "nginx", "state": "running"}).run(make_context())


def test_invalid_state():
    with pytest.raises(ValueError):
        ServiceOperation({"name": "nginx", "state": "paused"})
