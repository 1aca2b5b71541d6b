from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class Host:
    name: str
    address: Optional[str] = None
    port: int = 22
    user: Optional[str] = None
    private_key: Optional[str] = None
    connection: str = "ssh"
    become: bool = False
    groups: tuple[str, ...] = ()
    variables: Mapping[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return self.address or self.name


class VariableSet(Mapping[str, Any]):
    """Read-only, fully merged variables for one host."""

    def __init__(self, values: Mapping[str, Any], secrets: frozenset[str] = frozenset()):
        self._values = MappingProxyType(dict(values))
        self.secret_names = secrets

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        shown = {k: ("***" if k in self.secret_names else v) for k, v in self._values.items()}
        return f"VariableSet({shown!r})"

    def secret_values(self) -> list[str]:
        values: list[str] = []
        for name in self.secret_names:
            value = self._values.get(name)
            if value not in (None, ""):
                values.append(str(value))
        return values


@dataclass(frozen=True)
class Inventory:
    hosts: dict[str, Host]
    groups: dict[str, list[str]]
    variables: dict[str, Any] = field(default_factory=dict)
    group_variables: dict[str, dict[str, Any]] = field(default_factory=dict)

    def hosts_in(self, pattern: str) -> list[Host]:
        if pattern == "all":
            return list(self.hosts.values())
        if pattern in self.groups:
            return [self.hosts[name] for name in self.groups[pattern]]
        if pattern in self.hosts:
            return [self.hosts[pattern]]
        return []


@dataclass(frozen=True)
class VariableDecl:
    name: str
    type: str = "str"
    required: bool = False
    secret: bool = False
    default: Any = None
    has_default: bool = False


@dataclass(frozen=True)
class TaskSpec:
    name: str
    type: str
    data: dict[str, Any]
    notify: tuple[str, ...] = ()
    loop: Any = None
    critical: bool = True
    tolerate_failure: bool = False


@dataclass(frozen=True)
class HandlerSpec:
    name: str
    type: str
    data: dict[str, Any]


@dataclass(frozen=True)
class PlaySpec:
    name: str
    hosts: str
    tasks: list[TaskSpec]


@dataclass(frozen=True)
class Playbook:
    plays: list[PlaySpec]
    handlers: list[HandlerSpec] = field(default_factory=list)
    defaults: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, VariableDecl] = field(default_factory=dict)
    base_dir: Optional[Path] = None


class TaskStatus(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    task: Optional[str] = None
    skipped: bool = False
    tolerated: bool = False
    handler: bool = False

    @property
    def status(self) -> TaskStatus:
        if self.failed:
            return TaskStatus.FAILED
        if self.skipped:
            return TaskStatus.SKIPPED
        if self.changed:
            return TaskStatus.CHANGED
        return TaskStatus.UNCHANGED


class HostState(str, Enum):
    PENDING = "pending"
    GATHERING = "gathering"
    EXECUTING = "executing"
    HANDLING = "handling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class HostReport:
    host: str
    state: HostState = HostState.PENDING
    results: list[ActionResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state == HostState.FAILED

    def count(self, status: TaskStatus) -> int:
        return sum(1 for result in self.results if result.status == status)


@dataclass
class RunReport:
    hosts: dict[str, HostReport] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def results(self) -> list[ActionResult]:
        return [result for report in self.hosts.values() for result in report.results]

    @property
    def failed_hosts(self) -> list[str]:
        return [name for name, report in self.hosts.items() if report.failed]

    def totals(self) -> dict[str, int]:
        totals = {"ok": 0, "changed": 0, "failed": 0, "skipped": 0}
        for result in self.results:
            status = result.status
            if status == TaskStatus.UNCHANGED:
                totals["ok"] += 1
            else:
                totals[status.value] += 1
        return totals
