import json
from pathlib import Path

import pytest

from marionette_automation.config import MarionetteConfig
from marionette_automation.errors import ConfigError
from marionette_automation.inventory import InventoryLoader
from marionette_automation.playbook import PlaybookLoader
from marionette_automation.runner import PlaybookRunner
from marionette_automation.types import HostState, TaskStatus
from marionette_automation.variables import VariableResolver
from conftest import FakeHost, FakeService

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"
PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIO0shared deploy@ci"


@pytest.fixture
def fleet():
    accounts = FakeHost("accounts-1")
    app = FakeHost("app-1")
    app.available_packages = {"nodejs": "18.19.0-1", "nginx": "1.24.0-2"}
    app.services = {"app": FakeService(active=True, enabled=True), "nginx": FakeService(active=True, enabled=True)}
    return {"accounts-1": accounts, "app-1": app}


def environ(**overrides):
    values = {
        "MARIONETTE_VAR_ACCOUNTS": json.dumps([{"name": "alice"}, {"name": "bob", "groups": ["sudo"]}]),
        "MARIONETTE_VAR_SSH_PUBLIC_KEY": PUBLIC_KEY,
        "MARIONETTE_VAR_APP_SECRET": "first-app-secret",
    }
    values.update(overrides)
    return values


def run(fleet, env, *, dry_run=False):
    inventory = InventoryLoader().load(EXAMPLES / "inventory.yml")
    playbook = PlaybookLoader().load(EXAMPLES / "site.yml")
    config = MarionetteConfig()
    variables = VariableResolver(playbook, inventory, config, environ=env).resolve()
    runner = PlaybookRunner(
        playbook,
        inventory,
        variables,
        config,
        dry_run=dry_run,
        connection_factory=lambda host, _vars: fleet[host.name].connect(host, dry_run=dry_run),
    )
    return runner.run()


def test_first_run_converges_both_servers(fleet):
    report = run(fleet, environ())

    assert report.failed_hosts == []
    accounts, app = fleet["accounts-1"], fleet["app-1"]

    assert set(accounts.users) == {"alice", "bob"}
    assert accounts.users["alice"]["shell"] == "/bin/bash"
    assert accounts.users["bob"]["groups"] == ["sudo"]
    for name in ("alice", "bob"):
        assert accounts.read(f"/home/{name}/.ssh/authorized_keys") == f"{PUBLIC_KEY}\n"
    # become: every command ran through sudo
    assert all(cmd[:3] == ["sudo", "-n", "--"] for cmd in accounts.commands)

    assert app.packages == {"nodejs": "18.19.0-1", "nginx": "1.24.0-2"}
    env_file = app.files["/etc/app/app.env"]
    assert env_file.content == "NODE_ENV=production\nPORT=3000\nAPP_SECRET=first-app-secret\n"
    assert env_file.mode == 0o600
    site = app.read("/etc/nginx/sites-available/app.conf")
    assert "server_name app.example.com;" in site
    assert "proxy_pass http://127.0.0.1:3000;" in site
    assert app.files["/etc/nginx/sites-enabled/app.conf"].target == "/etc/nginx/sites-available/app.conf"

    assert app.services["app"].restarts == 1
    assert app.services["nginx"].reloads == 1
    handlers = [r.task for r in report.hosts["app-1"].results if r.handler]
    assert handlers == ["restart app", "reload proxy"]


def test_second_run_is_idempotent(fleet):
    run(fleet, environ())

    report = run(fleet, environ())

    assert {r.status for r in report.results} == {TaskStatus.UNCHANGED}
    assert not any(r.handler for r in report.results)
    assert fleet["app-1"].services["app"].restarts == 1
    assert fleet["app-1"].services["nginx"].reloads == 1


def test_changed_secret_only_restarts_app(fleet):
    run(fleet, environ())

    report = run(fleet, environ(MARIONETTE_VAR_APP_SECRET="rotated-app-secret"))

    changed = [r.task for r in report.results if r.status == TaskStatus.CHANGED]
    assert changed == ["app environment", "restart app"]
    assert fleet["app-1"].services["app"].restarts == 2
    assert fleet["app-1"].services["nginx"].reloads == 1
    # rendered secrets never show up in the report
    assert all("rotated-app-secret" not in r.details for r in report.results)


def test_check_mode_touches_nothing(fleet):
    report = run(fleet, environ(), dry_run=True)

    assert report.totals()["changed"] > 0
    assert report.failed_hosts == []
    assert all(fake.mutations == [] for fake in fleet.values())
    assert fleet["accounts-1"].users == {}


def test_missing_required_variable_fails_before_connecting(fleet):
    env = environ()
    del env["MARIONETTE_VAR_APP_SECRET"]

    with pytest.raises(ConfigError, match="app_secret"):
        run(fleet, env)

    assert all(fake.commands == [] for fake in fleet.values())


def test_broken_app_server_does_not_stop_accounts(fleet):
    fleet["app-1"].binaries = set()

    report = run(fleet, environ())

    assert report.hosts["accounts-1"].state == HostState.DONE
    assert report.hosts["app-1"].state == HostState.FAILED
    assert set(fleet["accounts-1"].users) == {"alice", "bob"}
