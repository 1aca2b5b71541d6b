from __future__ import annotations

from typing import Optional
import logging

from .base import Operation, TaskContext, as_list, coerce_bool
from ..connections import Connection
from ..errors import TaskError
from ..facts import PackageFacts
from ..types import ActionResult

logger = logging.getLogger(__name__)


class PackageOperation(Operation):
    """Install or remove packages using the host's package manager.

    An installed package is left alone unless a ``version`` is declared and
    the installed one differs.
    """

    action = "package"

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        self.packages = as_list(spec.get("name") or spec.get("packages"))
        if not self.packages:
            raise ValueError("package operation requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("package operation state must be 'present' or 'absent'")
        raw_version = spec.get("version")
        self.version = str(raw_version) if raw_version not in (None, "") else None
        if self.version and len(self.packages) != 1:
            raise ValueError("package version can only be declared for a single package")
        self.update_cache = bool(coerce_bool(spec.get("update_cache", False)))
        raw_manager = spec.get("manager")
        self.preferred_manager = str(raw_manager) if raw_manager else None

    def resource(self) -> str:
        rendered = ", ".join(self.packages[:3])
        if len(self.packages) > 3:
            rendered += ", ..."
        return rendered

    def gather(self, context: TaskContext) -> PackageFacts:
        facts = context.facts
        manager = facts.package_manager(self.preferred_manager)
        return facts.packages(manager, self.packages)

    def apply(self, context: TaskContext, facts: PackageFacts) -> ActionResult:
        manager = PackageManagerFactory.create(facts.manager)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, context.host.name, self.packages
        )
        changes: list[str] = []
        if self.state == "present":
            needed = [pkg for pkg in self.packages if not self._satisfied(facts, pkg)]
            if needed:
                if self.update_cache:
                    manager.refresh(context.connection)
                manager.install(context.connection, [self._pin(manager, pkg) for pkg in needed])
                changes.append(f"installed={','.join(self._pin(manager, pkg) for pkg in needed)}")
        else:
            removable = [pkg for pkg in self.packages if facts.is_installed(pkg)]
            if removable:
                manager.remove(context.connection, removable)
                changes.append(f"removed={','.join(removable)}")
        result = self.result(context, changes)
        if not changes:
            result.details = "already-installed" if self.state == "present" else "already-removed"
        result.details = f"manager={manager.name} {result.details}"
        return result

    def _satisfied(self, facts: PackageFacts, package: str) -> bool:
        installed = facts.version(package)
        if installed is None:
            return False
        if not self.version:
            return True
        return installed == self.version or installed.startswith(self.version + "-")

    def _pin(self, manager: "PackageManager", package: str) -> str:
        if not self.version:
            return package
        return manager.pinned(package, self.version)


class PackageManagerFactory:
    _MANAGERS = {
        "apt": lambda: AptPackageManager(),
        "dnf": lambda: DnfPackageManager(),
        "yum": lambda: YumPackageManager(),
        "pacman": lambda: PacmanPackageManager(),
    }

    @classmethod
    def create(cls, name: Optional[str]) -> "PackageManager":
        factory = cls._MANAGERS.get(str(name).lower())
        if factory is None:
            raise TaskError(f"Unknown package manager '{name}'")
        return factory()


class PackageManager:
    name = "generic"

    def install(self, connection: Connection, packages: list[str]) -> None:
        raise NotImplementedError

    def remove(self, connection: Connection, packages: list[str]) -> None:
        raise NotImplementedError

    def refresh(self, connection: Connection) -> None:
        pass

    def pinned(self, package: str, version: str) -> str:
        raise TaskError(f"{self.name} cannot install a pinned version of {package}")


class AptPackageManager(PackageManager):
    name = "apt"
    env = {"DEBIAN_FRONTEND": "noninteractive"}

    def install(self, connection: Connection, packages: list[str]) -> None:
        connection.run(["apt-get", "install", "-y", *packages], env=self.env)

    def remove(self, connection: Connection, packages: list[str]) -> None:
        connection.run(["apt-get", "remove", "-y", *packages], env=self.env)

    def refresh(self, connection: Connection) -> None:
        connection.run(["apt-get", "update"], env=self.env)

    def pinned(self, package: str, version: str) -> str:
        return f"{package}={version}"


class DnfPackageManager(PackageManager):
    name = "dnf"

    def install(self, connection: Connection, packages: list[str]) -> None:
        connection.run(["dnf", "install", "-y", *packages])

    def remove(self, connection: Connection, packages: list[str]) -> None:
        connection.run(["dnf", "remove", "-y", *packages])

    def refresh(self, connection: Connection) -> None:
        connection.run(["dnf", "makecache"])

    def pinned(self, package: str, version: str) -> str:
        return f"{package}-{version}"


class YumPackageManager(DnfPackageManager):
    name = "yum"

    def install(self, connection: Connection, packages: list[str]) -> None:  # type: ignore[override]
        connection.run(["yum", "install", "-y", *packages])

    def remove(self, connection: Connection, packages: list[str]) -> None:  # type: ignore[override]
        connection.run(["yum", "remove", "-y", *packages])

    def refresh(self, connection: Connection) -> None:  # type: ignore[override]
        connection.run(["yum", "makecache"])


class PacmanPackageManager(PackageManager):
    name = "pacman"

    def install(self, connection: Connection, packages: list[str]) -> None:
        connection.run(["pacman", "-S", "--noconfirm", "--needed", *packages])

    def remove(self, connection: Connection, packages: list[str]) -> None:
        connection.run(["pacman", "-R", "--noconfirm", *packages])

    def refresh(self, connection: Connection) -> None:
        connection.run(["pacman", "-Sy"])
