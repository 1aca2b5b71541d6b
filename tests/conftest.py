from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Optional

import pytest

from marionette_automation.connections import CommandResult, Connection
from marionette_automation.operations import TaskContext
from marionette_automation.templates import TemplateRenderer
from marionette_automation.types import Host


@dataclass
class FakeFile:
    kind: str = "regular file"
    content: str = ""
    mode: int = 0o644
    owner: str = "root"
    group: str = "root"
    target: Optional[str] = None


@dataclass
class FakeService:
    active: bool = False
    enabled: bool = False
    restarts: int = 0
    reloads: int = 0


class FakeHost:
    """In-memory target host that understands the commands marionette issues."""

    def __init__(self, name: str = "web-1"):
        self.name = name
        self.users: dict[str, dict[str, Any]] = {}
        self.files: dict[str, FakeFile] = {}
        self.packages: dict[str, str] = {}
        self.available_packages: dict[str, str] = {}
        self.services: dict[str, FakeService] = {}
        self.binaries = {"apt-get", "systemctl"}
        self.responses: dict[str, tuple[int, str, str]] = {}
        self.commands: list[list[str]] = []
        self.mutations: list[list[str]] = []
        self.uploads: list[str] = []
        self._next_uid = 1000

    # Setup helpers -------------------------------------------------------
    def add_user(self, name: str, *, shell: str = "/bin/sh", groups: Optional[list[str]] = None) -> None:
        uid = self._next_uid
        self._next_uid += 1
        home = f"/home/{name}"
        self.users[name] = {"uid": uid, "gid": uid, "home": home, "shell": shell, "groups": list(groups or [])}
        self.files[home] = FakeFile(kind="directory", mode=0o755, owner=name, group=name)

    def write(self, path: str, content: str, **attrs: Any) -> None:
        self.files[path] = FakeFile(content=content, **attrs)

    def read(self, path: str) -> str:
        return self.files[path].content

    def connect(self, host: Host, variables: Any = None, *, dry_run: bool = False) -> "FakeConnection":
        return FakeConnection(host, self, dry_run=dry_run)

    def ran(self, *prefix: str) -> list[list[str]]:
        return [cmd for cmd in self.mutations if cmd[: len(prefix)] == list(prefix)]

    # Command interpreter -------------------------------------------------
    def execute(self, argv: list[str], mutable: bool) -> CommandResult:
        self.commands.append(argv)
        args = list(argv)
        if args[:3] == ["sudo", "-n", "--"]:
            args = args[3:]
        if args and args[0] == "env":
            args = args[1:]
            while args and "=" in args[0]:
                args = args[1:]
        if mutable:
            self.mutations.append(args)
        handler = getattr(self, f"_cmd_{args[0].replace('-', '_')}", None)
        if handler is None:
            return self._ok(args)
        result = handler(args)
        if isinstance(result, CommandResult):
            return result
        rc, out, err = result
        return CommandResult(args, out, err, rc)

    @staticmethod
    def _ok(args: list[str], out: str = "") -> CommandResult:
        return CommandResult(args, out, "", 0)

    def _cmd_getent(self, args):
        user = self.users.get(args[2])
        if user is None:
            return 2, "", ""
        name = args[2]
        return 0, f"{name}:x:{user['uid']}:{user['gid']}::{user['home']}:{user['shell']}\n", ""

    def _cmd_id(self, args):
        user = self.users.get(args[2])
        if user is None:
            return 1, "", f"id: '{args[2]}': no such user"
        return 0, " ".join([args[2], *user["groups"]]) + "\n", ""

    def _cmd_useradd(self, args):
        opts, name = _options(args[1:-1]), args[-1]
        if name in self.users:
            return 9, "", f"useradd: user '{name}' already exists"
        self.add_user(
            name,
            shell=opts.get("--shell", "/bin/sh"),
            groups=[g for g in opts.get("--groups", "").split(",") if g],
        )
        self.users[name]["password_hash"] = opts.get("--password")
        return 0, "", ""

    def _cmd_usermod(self, args):
        opts, name = _options(args[1:-1]), args[-1]
        user = self.users[name]
        if "--shell" in opts:
            user["shell"] = opts["--shell"]
        if "--groups" in opts:
            for group in opts["--groups"].split(","):
                if group not in user["groups"]:
                    user["groups"].append(group)
        return 0, "", ""

    def _cmd_userdel(self, args):
        user = self.users.pop(args[-1])
        if "--remove" in args:
            self.files.pop(user["home"], None)
        return 0, "", ""

    def _cmd_cat(self, args):
        entry = self.files.get(args[1])
        if entry is None:
            return 1, "", f"cat: {args[1]}: No such file or directory"
        return 0, entry.content, ""

    def _cmd_stat(self, args):
        path = args[-1]
        entry = self.files.get(path)
        if entry is None:
            return 1, "", f"stat: cannot statx '{path}': No such file or directory"
        quoted = f"'{path}'"
        if entry.kind == "symbolic link":
            quoted = f"'{path}' -> '{entry.target}'"
        return 0, f"{entry.kind}|{entry.mode:o}|{entry.owner}|{entry.group}|{quoted}\n", ""

    def _cmd_sha256sum(self, args):
        entry = self.files[args[1]]
        return 0, f"{hashlib.sha256(entry.content.encode()).hexdigest()}  {args[1]}\n", ""

    def _cmd_test(self, args):
        return (0 if args[2] in self.files else 1), "", ""

    def _cmd_sh(self, args):
        script = args[2]
        if script.startswith("command -v "):
            return (0 if script.split()[-1] in self.binaries else 1), "", ""
        return self.responses.get(script, (0, "", ""))

    def _cmd_dpkg_query(self, args):
        version = self.packages.get(args[-1])
        if version is None:
            return 1, "", f"dpkg-query: no packages found matching {args[-1]}"
        return 0, f"install ok installed {version}", ""

    def _cmd_apt_get(self, args):
        if args[1] == "install":
            for spec in args[3:]:
                name, _, version = spec.partition("=")
                if name not in self.available_packages and not version:
                    return 100, "", f"E: Unable to locate package {name}"
                self.packages[name] = version or self.available_packages[name]
        elif args[1] == "remove":
            for name in args[3:]:
                self.packages.pop(name, None)
        return 0, "", ""

    def _cmd_install(self, args):
        opts = _options(args[1:-1])
        path = args[-1]
        entry = self.files.get(path)
        if entry is None or entry.kind != "directory":
            entry = FakeFile(kind="directory", mode=0o755)
            self.files[path] = entry
        if "-m" in opts:
            entry.mode = int(opts["-m"], 8)
        entry.owner = opts.get("-o", entry.owner)
        entry.group = opts.get("-g", entry.group)
        return 0, "", ""

    def _cmd_rm(self, args):
        path = args[-1]
        for existing in list(self.files):
            if existing == path or existing.startswith(path.rstrip("/") + "/"):
                del self.files[existing]
        return 0, "", ""

    def _cmd_ln(self, args):
        self.files[args[-1]] = FakeFile(kind="symbolic link", mode=0o777, target=args[-2])
        return 0, "", ""

    def _cmd_chmod(self, args):
        self.files[args[2]].mode = int(args[1], 8)
        return 0, "", ""

    def _cmd_chown(self, args):
        owner, _, group = args[1].partition(":")
        entry = self.files[args[2]]
        entry.owner = owner or entry.owner
        entry.group = group or entry.group
        return 0, "", ""

    def _cmd_systemctl(self, args):
        verb, name = args[1], args[2]
        service = self.services.get(name)
        if service is None:
            return 4, "", f"Unit {name}.service could not be found."
        if verb == "is-active":
            return (0 if service.active else 3), "", ""
        if verb == "is-enabled":
            return (0 if service.enabled else 1), "", ""
        if verb == "enable":
            service.enabled = True
        elif verb == "disable":
            service.enabled = False
        elif verb == "start":
            service.active = True
        elif verb == "stop":
            service.active = False
        elif verb == "restart":
            service.active = True
            service.restarts += 1
        elif verb == "reload":
            service.reloads += 1
        return 0, "", ""

    def put(self, data: bytes, path: str, *, mode: Optional[int], owner: Optional[str], group: Optional[str]) -> None:
        self.uploads.append(path)
        self.files[path] = FakeFile(
            content=data.decode(),
            mode=0o644 if mode is None else mode,
            owner=owner or "root",
            group=group or "root",
        )


class FakeConnection(Connection):
    def __init__(self, host: Host, fake: FakeHost, *, dry_run: bool = False):
        super().__init__(host, dry_run=dry_run)
        self.fake = fake
        self.closed = False

    def _execute(self, argv, *, cwd, timeout, mutable):  # type: ignore[override]
        return self.fake.execute(argv, mutable)

    def _put(self, data, remote_path, *, mode, owner, group):  # type: ignore[override]
        self.fake.put(data, remote_path, mode=mode, owner=owner, group=group)

    def close(self) -> None:
        self.closed = True


def _options(args: list[str]) -> dict[str, str]:
    opts: dict[str, str] = {}
    index = 0
    while index < len(args):
        arg = args[index]
        if arg.startswith("-") and index + 1 < len(args) and not args[index + 1].startswith("-"):
            opts[arg] = args[index + 1]
            index += 2
        else:
            opts[arg] = ""
            index += 1
    return opts


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def make_context(fake_host: FakeHost):
    def _make(
        *,
        dry_run: bool = False,
        variables: Optional[dict[str, Any]] = None,
        renderer: Optional[TemplateRenderer] = None,
    ) -> TaskContext:
        host = Host(name=fake_host.name)
        return TaskContext(
            host=host,
            connection=fake_host.connect(host, dry_run=dry_run),
            variables=variables or {},
            renderer=renderer or TemplateRenderer(),
        )

    return _make
