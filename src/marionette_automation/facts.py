"""Read-only probes of remote state.

Every probe runs with ``mutable=False`` so it also runs in check mode, and
never changes the host. Unexpected probe failures raise :class:`FactError`,
which aborts only the task that asked for the fact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Optional
import logging

from .connections import CommandResult, Connection
from .errors import FactError

logger = logging.getLogger(__name__)

PACKAGE_MANAGERS = ("apt", "dnf", "yum", "pacman")
_MANAGER_BINARIES = {"apt": "apt-get", "dnf": "dnf", "yum": "yum", "pacman": "pacman"}


@dataclass
class UserFacts:
    name: str
    exists: bool
    uid: Optional[int] = None
    gid: Optional[int] = None
    home: Optional[str] = None
    shell: Optional[str] = None
    groups: list[str] = field(default_factory=list)


@dataclass
class KeyFacts:
    user: str
    user_exists: bool
    home: Optional[str] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    keys: list[str] = field(default_factory=list)
    raw: str = ""

    @property
    def ssh_dir(self) -> Optional[str]:
        return str(PurePosixPath(self.home) / ".ssh") if self.home else None

    @property
    def path(self) -> Optional[str]:
        return str(PurePosixPath(self.home) / ".ssh" / "authorized_keys") if self.home else None


@dataclass
class PackageFacts:
    manager: str
    installed: dict[str, Optional[str]] = field(default_factory=dict)

    def version(self, name: str) -> Optional[str]:
        return self.installed.get(name)

    def is_installed(self, name: str) -> bool:
        return self.installed.get(name) is not None


@dataclass
class FileFacts:
    path: str
    exists: bool
    kind: Optional[str] = None
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    sha256: Optional[str] = None
    link_target: Optional[str] = None

    @property
    def is_dir(self) -> bool:
        return self.kind == "directory"

    @property
    def is_symlink(self) -> bool:
        return self.kind == "symbolic link"


@dataclass
class CommandFacts:
    creates_exists: bool = False
    only_if_rc: Optional[int] = None
    unless_rc: Optional[int] = None


@dataclass
class ServiceFacts:
    name: str
    available: bool
    active: bool = False
    enabled: bool = False


class FactGatherer:
    def __init__(self, connection: Connection):
        self.connection = connection

    def _probe(self, command: list[str]) -> CommandResult:
        return self.connection.run(command, check=False, mutable=False)

    @staticmethod
    def _failure(what: str, result: CommandResult) -> FactError:
        detail = result.summary() or f"rc={result.returncode}"
        return FactError(f"{what}: {detail}")

    def user(self, name: str) -> UserFacts:
        result = self._probe(["getent", "passwd", name])
        if result.returncode == 2:
            return UserFacts(name=name, exists=False)
        if result.returncode != 0:
            raise self._failure(f"unable to look up user {name}", result)
        fields = result.stdout.strip().splitlines()[0].split(":") if result.stdout.strip() else []
        if len(fields) < 7:
            raise FactError(f"unexpected passwd entry for {name}")
        groups_result = self._probe(["id", "-nG", name])
        if groups_result.returncode != 0:
            raise self._failure(f"unable to list groups of {name}", groups_result)
        return UserFacts(
            name=name,
            exists=True,
            uid=int(fields[2]),
            gid=int(fields[3]),
            home=fields[5],
            shell=fields[6],
            groups=groups_result.stdout.split(),
        )

    def authorized_keys(self, user: str) -> KeyFacts:
        info = self.user(user)
        if not info.exists:
            return KeyFacts(user=user, user_exists=False)
        facts = KeyFacts(user=user, user_exists=True, home=info.home, uid=info.uid, gid=info.gid)
        content = self.read_file(facts.path or "")
        if content:
            facts.raw = content
            facts.keys = [line.strip() for line in content.splitlines() if line.strip()]
        return facts

    def read_file(self, path: str) -> Optional[str]:
        result = self._probe(["cat", path])
        if result.returncode == 0:
            return result.stdout
        if "No such file" in result.stderr:
            return None
        raise self._failure(f"unable to read {path}", result)

    def file(self, path: str) -> FileFacts:
        result = self._probe(["stat", "-c", "%F|%a|%U|%G|%N", path])
        if result.returncode != 0:
            if "No such file" in result.stderr:
                return FileFacts(path=path, exists=False)
            raise self._failure(f"unable to stat {path}", result)
        kind, mode, owner, group, quoted = result.stdout.strip().split("|", 4)
        facts = FileFacts(
            path=path,
            exists=True,
            kind=kind,
            mode=int(mode, 8),
            owner=owner,
            group=group,
        )
        if facts.is_symlink and " -> " in quoted:
            facts.link_target = quoted.split(" -> ", 1)[1].strip("'\"‘’")
        elif kind.startswith("regular"):
            digest = self._probe(["sha256sum", path])
            if digest.returncode != 0:
                raise self._failure(f"unable to hash {path}", digest)
            facts.sha256 = digest.stdout.split()[0]
        return facts

    def path_exists(self, path: str) -> bool:
        return self._probe(["test", "-e", path]).returncode == 0

    def package_manager(self, preferred: Optional[str] = None) -> str:
        if preferred:
            name = preferred.lower()
            if name not in PACKAGE_MANAGERS:
                raise FactError(f"Unknown package manager '{preferred}'")
            return name
        for name in PACKAGE_MANAGERS:
            probe = self._probe(["sh", "-c", f"command -v {_MANAGER_BINARIES[name]}"])
            if probe.returncode == 0:
                return name
        raise FactError("No supported package manager found on the host")

    def packages(self, manager: str, names: list[str]) -> PackageFacts:
        facts = PackageFacts(manager=manager)
        for name in names:
            facts.installed[name] = self._package_version(manager, name)
        return facts

    def _package_version(self, manager: str, name: str) -> Optional[str]:
        if manager == "apt":
            result = self._probe(["dpkg-query", "-W", "-f", "${Status} ${Version}", name])
            if result.returncode == 1:
                return None
            if result.returncode != 0:
                raise self._failure(f"unable to query package {name}", result)
            parts = result.stdout.split()
            if len(parts) >= 4 and parts[2] == "installed":
                return parts[3]
            return None
        if manager in {"dnf", "yum"}:
            result = self._probe(["rpm", "-q", "--qf", "%{VERSION}-%{RELEASE}", name])
            if result.returncode == 0:
                return result.stdout.strip()
            if "is not installed" in result.stdout + result.stderr:
                return None
            raise self._failure(f"unable to query package {name}", result)
        if manager == "pacman":
            result = self._probe(["pacman", "-Q", name])
            if result.returncode == 0:
                parts = result.stdout.split()
                return parts[1] if len(parts) > 1 else ""
            if "was not found" in result.stderr:
                return None
            raise self._failure(f"unable to query package {name}", result)
        raise FactError(f"Unknown package manager '{manager}'")

    def service(self, name: str) -> ServiceFacts:
        available = self._probe(["sh", "-c", "command -v systemctl"]).returncode == 0
        if not available:
            return ServiceFacts(name=name, available=False)
        active = self._probe(["systemctl", "is-active", name]).returncode == 0
        enabled = self._probe(["systemctl", "is-enabled", name]).returncode == 0
        return ServiceFacts(name=name, available=True, active=active, enabled=enabled)
