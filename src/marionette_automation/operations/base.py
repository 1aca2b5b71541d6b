from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from ..connections import Connection
from ..facts import FactGatherer
from ..templates import TemplateRenderer
from ..types import ActionResult, Host


@dataclass
class TaskContext:
    host: Host
    connection: Connection
    variables: Mapping[str, Any] = field(default_factory=dict)
    renderer: TemplateRenderer = field(default_factory=TemplateRenderer)
    notified: list[str] = field(default_factory=list)

    @property
    def facts(self) -> FactGatherer:
        return FactGatherer(self.connection)

    @property
    def dry_run(self) -> bool:
        return self.connection.dry_run

    def notify(self, handlers: Iterable[str]) -> None:
        for name in handlers:
            if name not in self.notified:
                self.notified.append(name)


class Operation(ABC):
    """Shared surface for runnable automation actions.

    ``gather`` reads the fact snapshot the operation needs and must not change
    the host; ``apply`` reconciles the host with the declaration using that
    snapshot and reports whether anything changed.
    """

    action = "operation"

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def gather(self, context: TaskContext) -> Any:
        """Collect the facts needed to decide whether ``apply`` must act."""

    @abstractmethod
    def apply(self, context: TaskContext, facts: Any) -> ActionResult:
        """Perform the operation against ``context.host``."""

    def run(self, context: TaskContext) -> ActionResult:
        return self.apply(context, self.gather(context))

    def result(self, context: TaskContext, changes: list[str]) -> ActionResult:
        changed = bool(changes)
        detail = ", ".join(changes) if changes else "noop"
        if changed and context.dry_run:
            detail = f"{detail} (check)"
        return ActionResult(
            host=context.host.name,
            action=self.action,
            changed=changed,
            details=detail,
            resource=self.resource(),
        )

    def resource(self) -> Optional[str]:
        for key in ("name", "path", "user"):
            value = self.spec.get(key)
            if value:
                return str(value)
        return None


def coerce_bool(value: Any | None) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1", "on"}:
            return True
        if lowered in {"false", "no", "0", "off"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)


def parse_mode(value: Optional[object]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    digits = text[2:] if text.lower().startswith("0o") else text
    if not digits.isdigit() or set(digits) & {"8", "9"}:
        raise ValueError(f"invalid file mode {value!r}")
    # quoted modes are always octal, with or without the leading zero
    return int(digits, 8)


def as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item) for item in value]
