import json
from pathlib import Path

from marionette_automation import cli
from marionette_automation import runner as runner_mod
from marionette_automation.types import ActionResult, HostReport, HostState, RunReport
from conftest import FakeHost, FakeService

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


def test_format_result_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="web-1", action="file", changed=False, details="boom", failed=True)
    line = cli.format_result(result)
    assert line == "web-1::file failed - boom"


def test_format_result_success(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="web-1", action="package", changed=True, details="installed", resource="nodejs")
    line = cli.format_result(result)
    assert line == "web-1::package[nodejs] changed - installed"


def test_format_result_handler_and_tolerated(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    handler = ActionResult(host="h", action="service", changed=True, details="restarted", resource="app", handler=True)
    tolerated = ActionResult(host="h", action="command", changed=False, details="rc=1", failed=True, tolerated=True)

    assert cli.format_result(handler) == "h::handler:service[app] changed - restarted"
    assert cli.format_result(tolerated) == "h::command failed (ignored) - rc=1"


def test_should_display_result():
    noop = ActionResult(host="h", action="file", changed=False, details="noop")
    changed = ActionResult(host="h", action="file", changed=True, details="content")

    assert cli.should_display_result(changed, cli.logging.INFO) is True
    assert cli.should_display_result(noop, cli.logging.INFO) is False
    assert cli.should_display_result(noop, cli.logging.DEBUG) is True


def test_summary_counts(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    summary = cli.Summary()
    for result in [
        ActionResult(host="web-1", action="file", changed=True, details="created"),
        ActionResult(host="web-1", action="file", changed=False, details="noop"),
        ActionResult(host="web-2", action="file", changed=False, details="x", failed=True),
        ActionResult(host="web-2", action="file", changed=False, details="skipped", skipped=True),
    ]:
        summary.add(result)

    text = summary.render()

    assert "web-1" in text and "ok=1 changed=1 failed=0 skipped=0" in text
    assert "ok=0 changed=0 failed=1 skipped=1" in text
    assert text.splitlines()[-1] == "OK: 1 | Changed: 1 | Failed: 1 | Skipped: 1"


def test_exit_codes():
    ok = RunReport(hosts={"a": HostReport("a", state=HostState.DONE)})
    failed = RunReport(hosts={"a": HostReport("a", state=HostState.FAILED)})
    interrupted = RunReport(hosts={"a": HostReport("a", state=HostState.FAILED)}, cancelled=True)

    assert cli.exit_code(ok) == 0
    assert cli.exit_code(failed) == 2
    assert cli.exit_code(interrupted) == 130


def test_main_config_error_returns_1(tmp_path: Path, capsys):
    code = cli.main(
        [
            "run",
            str(EXAMPLES / "site.yml"),
            "--inventory",
            str(EXAMPLES / "inventory.yml"),
            "--config",
            str(tmp_path / "missing.conf"),
        ]
    )

    assert code == 1
    assert "required variable" in capsys.readouterr().err


def test_main_without_inventory_returns_1(tmp_path: Path, capsys):
    code = cli.main(["run", str(EXAMPLES / "site.yml"), "--config", str(tmp_path / "missing.conf")])

    assert code == 1
    assert "no inventory" in capsys.readouterr().err


def test_main_runs_playbook(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setenv("MARIONETTE_VAR_SSH_PUBLIC_KEY", "ssh-ed25519 AAAAC3Nza deploy@ci")
    monkeypatch.setenv("MARIONETTE_VAR_APP_SECRET", "cli-app-secret")
    fleet = {"accounts-1": FakeHost("accounts-1"), "app-1": FakeHost("app-1")}
    fleet["app-1"].available_packages = {"nodejs": "18", "nginx": "1.24"}
    fleet["app-1"].services = {"app": FakeService(active=True), "nginx": FakeService(active=True)}
    monkeypatch.setattr(
        runner_mod,
        "open_connection",
        lambda host, config, dry_run=False, variables=None: fleet[host.name].connect(host, dry_run=dry_run),
    )
    extra = tmp_path / "accounts.json"
    extra.write_text(json.dumps({"accounts": [{"name": "alice"}]}))

    code = cli.main(
        [
            "run",
            str(EXAMPLES / "site.yml"),
            "-i",
            str(EXAMPLES / "inventory.yml"),
            "--config",
            str(tmp_path / "missing.conf"),
            "-e",
            f"@{extra}",
            "--limit",
            "accounts",
        ]
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "accounts-1::user[alice] changed - created" in out
    assert "app-1" not in out
    assert "OK: 0 | Changed: 2 | Failed: 0 | Skipped: 0" in out
    assert fleet["app-1"].commands == []
