from marionette_automation.operations.command import CommandOperation
from marionette_automation.operations.notify import NotifyOperation


def test_command_runs(fake_host, make_context):
    result = CommandOperation({"name": "reload", "command": "supervisorctl reread"}).run(make_context())

    assert result.changed is True
    assert result.details == "ran (rc=0)"
    assert fake_host.ran("sh", "-c") == [["sh", "-c", "supervisorctl reread"]]


def test_command_skips_when_creates_exists(fake_host, make_context):
    fake_host.write("/opt/app/.installed", "")
    op = CommandOperation({"command": ["make", "install"], "creates": "/opt/app/.installed"})

    result = op.run(make_context())

    assert result.changed is False
    assert "creates" in result.details
    assert fake_host.mutations == []


def test_command_relative_creates_uses_cwd(fake_host, make_context):
    fake_host.write("/opt/app/build", "")
    op = CommandOperation({"command": "make", "creates": "build", "cwd": "/opt/app"})

    assert op.run(make_context()).changed is False


def test_command_only_if_and_unless_guards(fake_host, make_context):
    fake_host.responses["test -f /etc/ready"] = (1, "", "")
    fake_host.responses["grep -q done /var/log/app"] = (0, "", "")

    only_if = CommandOperation({"command": "echo skip", "only_if": "test -f /etc/ready"}).run(make_context())
    unless = CommandOperation({"command": "echo skip", "unless": "grep -q done /var/log/app"}).run(make_context())

    assert only_if.changed is False
    assert "only_if" in only_if.details
    assert unless.changed is False
    assert "unless" in unless.details
    assert fake_host.mutations == []


def test_command_allowed_returns(fake_host, make_context):
    fake_host.responses["exit 3"] = (3, "", "")
    fake_host.responses["exit 5"] = (5, "", "boom")

    ok = CommandOperation({"command": "exit 3", "returns": [0, 3]}).run(make_context())
    failed = CommandOperation({"command": "exit 5"}).run(make_context())

    assert ok.failed is False
    assert failed.failed is True
    assert failed.details == "rc=5: boom"


def test_command_check_mode_runs_guards_only(fake_host, make_context):
    fake_host.responses["test -f /etc/ready"] = (0, "", "")
    op = CommandOperation({"command": "systemctl daemon-reload", "only_if": "test -f /etc/ready"})

    result = op.run(make_context(dry_run=True))

    assert result.details == "ran (check)"
    assert fake_host.mutations == []
    assert ["sh", "-c", "test -f /etc/ready"] in fake_host.commands


def test_notify_queues_handlers_once(make_context):
    context = make_context()

    result = NotifyOperation({"handlers": ["restart app", "restart proxy"]}).run(context)
    NotifyOperation({"handler": "restart app"}).run(context)

    assert result.changed is False
    assert context.notified == ["restart app", "restart proxy"]
