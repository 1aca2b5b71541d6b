from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation, TaskContext, coerce_bool
from ..connections import Connection
from ..errors import TaskError
from ..facts import ServiceFacts
from ..types import ActionResult

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def enable(self, connection: Connection, service: str) -> None:
        connection.run([self.executable, "enable", service])

    def disable(self, connection: Connection, service: str) -> None:
        connection.run([self.executable, "disable", service])

    def start(self, connection: Connection, service: str) -> None:
        connection.run([self.executable, "start", service])

    def stop(self, connection: Connection, service: str) -> None:
        connection.run([self.executable, "stop", service])

    def restart(self, connection: Connection, service: str) -> None:
        connection.run([self.executable, "restart", service])

    def reload(self, connection: Connection, service: str) -> None:
        connection.run([self.executable, "reload", service])


class ServiceOperation(Operation):
    """Manage systemd services."""

    action = "service"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.name = str(raw_name)
        self._enabled = coerce_bool(spec.get("enabled"))
        self._state = spec.get("state")
        self.restart = bool(coerce_bool(spec.get("restart", False)))
        self.reload = bool(coerce_bool(spec.get("reload", False)))
        if self._state == "restarted":
            self._state, self.restart = None, True
        elif self._state == "reloaded":
            self._state, self.reload = None, True
        if self._state not in {None, "running", "stopped", "started"}:
            raise ValueError("service state must be 'running', 'stopped', 'restarted' or 'reloaded'")
        if self._state == "started":
            self._state = "running"
        self.systemctl = SystemCtl()

    def gather(self, context: TaskContext) -> ServiceFacts:
        return context.facts.service(self.name)

    def apply(self, context: TaskContext, facts: ServiceFacts) -> ActionResult:
        if not facts.available:
            raise TaskError("systemctl is not available on this host")

        connection = context.connection
        changes: list[str] = []

        if self._enabled is not None:
            if self._enabled and not facts.enabled:
                logger.debug("Enabling service %s", self.name)
                self.systemctl.enable(connection, self.name)
                changes.append("enabled")
            elif not self._enabled and facts.enabled:
                logger.debug("Disabling service %s", self.name)
                self.systemctl.disable(connection, self.name)
                changes.append("disabled")

        started = False
        if self._state is not None:
            if self._state == "running" and not facts.active:
                logger.debug("Starting service %s", self.name)
                self.systemctl.start(connection, self.name)
                changes.append("started")
                started = True
            elif self._state == "stopped" and facts.active:
                logger.debug("Stopping service %s", self.name)
                self.systemctl.stop(connection, self.name)
                changes.append("stopped")

        if self.restart and not started and self._state != "stopped":
            logger.debug("Restarting service %s", self.name)
            self.systemctl.restart(connection, self.name)
            changes.append("restarted")
        elif self.reload and not started and self._state != "stopped":
            logger.debug("Reloading service %s", self.name)
            self.systemctl.reload(connection, self.name)
            changes.append("reloaded")

        return self.result(context, changes)
