from __future__ import annotations

from typing import Any

from .base import Operation, TaskContext, as_list
from ..types import ActionResult


class NotifyOperation(Operation):
    """Queue handlers for this host without acting on it."""

    action = "notify"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.handlers = as_list(spec.get("handlers") or spec.get("handler") or spec.get("name"))
        if not self.handlers:
            raise ValueError("notify operation requires at least one handler")

    def resource(self) -> str:
        return ", ".join(self.handlers)

    def gather(self, context: TaskContext) -> None:
        return None

    def apply(self, context: TaskContext, facts: None) -> ActionResult:
        context.notify(self.handlers)
        return ActionResult(
            host=context.host.name,
            action=self.action,
            changed=False,
            details=f"queued {', '.join(self.handlers)}",
            resource=self.resource(),
        )
