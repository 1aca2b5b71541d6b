from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Mapping, Optional
import logging
import threading

from .config import MarionetteConfig
from .connections import Connection, open_connection
from .errors import FactError, MarionetteError, TaskError
from .inventory import select_hosts
from .operations import OPERATION_REGISTRY, Operation, TaskContext
from .secrets import SecretRedactor
from .templates import TemplateRenderer
from .types import (
    ActionResult,
    HandlerSpec,
    Host,
    HostReport,
    HostState,
    Inventory,
    Playbook,
    RunReport,
    TaskSpec,
)

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[Host, Mapping[str, Any]], Connection]


class PlaybookRunner:
    """Runs every play against its hosts, one worker per host.

    Tasks for a host run strictly in order; hosts are independent unless
    ``any_errors_fatal`` is set. Handlers notified on a host run once each,
    in declaration order, after that host's tasks.
    """

    def __init__(
        self,
        playbook: Playbook,
        inventory: Inventory,
        variables: Mapping[str, Mapping[str, Any]],
        config: Optional[MarionetteConfig] = None,
        *,
        dry_run: bool = False,
        limit: Optional[str] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        renderer: Optional[TemplateRenderer] = None,
        redactor: Optional[SecretRedactor] = None,
    ):
        self.playbook = playbook
        self.inventory = inventory
        self.variables = variables
        self.config = config or MarionetteConfig()
        self.dry_run = dry_run
        self.limit = limit
        self.connection_factory = connection_factory or self._open_connection
        self.renderer = renderer or TemplateRenderer(self._template_path())
        self.redactor = redactor or SecretRedactor()
        for values in variables.values():
            secret_values = getattr(values, "secret_values", None)
            if secret_values is not None:
                self.redactor.add(secret_values())
        self._cancel = threading.Event()

    def hosts(self) -> list[Host]:
        return target_hosts(self.playbook, self.inventory, self.limit)

    def run(self) -> RunReport:
        hosts = self.hosts()
        report = RunReport(hosts={host.name: HostReport(host=host.name) for host in hosts})
        if not hosts:
            logger.warning("No hosts matched")
            return report

        workers = max(1, min(self.config.forks, len(hosts)))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="marionette")
        try:
            futures = {pool.submit(self._run_host, host, report.hosts[host.name]): host for host in hosts}
            for future in as_completed(futures):
                future.result()
        except KeyboardInterrupt:
            logger.warning("Interrupted; waiting for in-flight tasks to finish")
            report.cancelled = True
            self._cancel.set()
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        for host in hosts:
            host_report = report.hosts[host.name]
            if host_report.state == HostState.PENDING:
                for task in self._tasks_for(host):
                    host_report.results.append(self._skipped(host, task, "cancelled"))
                host_report.state = HostState.DONE
        return report

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # Per-host worker -----------------------------------------------------
    def _run_host(self, host: Host, report: HostReport) -> HostReport:
        variables = self.variables.get(host.name, {})
        connection: Optional[Connection] = None
        tasks = self._tasks_for(host)
        try:
            if self._cancel.is_set():
                report.results.extend(self._skipped(host, task, "cancelled") for task in tasks)
                report.state = HostState.DONE
                return report

            connection = self.connection_factory(host, variables)
            context = TaskContext(
                host=host,
                connection=connection,
                variables=variables,
                renderer=self.renderer,
            )
            for index, task in enumerate(tasks):
                if self._cancel.is_set():
                    report.results.extend(self._skipped(host, rest, "cancelled") for rest in tasks[index:])
                    break
                if not self._run_task(task, context, report):
                    report.results.extend(self._skipped(host, rest, "host failed") for rest in tasks[index + 1:])
                    break

            handlers = self._notified_handlers(context)
            if report.state == HostState.FAILED or self._cancel.is_set():
                reason = "host failed" if report.state == HostState.FAILED else "cancelled"
                report.results.extend(self._skipped(host, handler, reason, handler=True) for handler in handlers)
            else:
                report.state = HostState.HANDLING
                self._run_handlers(handlers, context, report)
        except Exception as exc:  # noqa: BLE001
            logger.error("host=%s failed: %s", host.name, self.redactor.redact(str(exc)), exc_info=True)
            report.state = HostState.FAILED
            report.error = self.redactor.redact(str(exc))
            if not report.results:
                report.results.extend(self._skipped(host, task, "host failed") for task in tasks)
            self._host_failed()
        finally:
            if connection is not None:
                try:
                    connection.close()
                except Exception:  # noqa: BLE001
                    logger.debug("Error closing connection to %s", host.name, exc_info=True)

        if report.state != HostState.FAILED:
            report.state = HostState.DONE
        logger.debug("host=%s finished state=%s", host.name, report.state.value)
        return report

    def _run_task(self, task: TaskSpec, context: TaskContext, report: HostReport) -> bool:
        """Run one task (every loop item); return False when the host failed."""

        host = context.host
        try:
            items = self._loop_items(task, context)
        except MarionetteError as exc:
            result = self._failure(host, task.type, task.name, exc, data=task.data)
            return self._record(task, result, context, report)

        for index, item in enumerate(items):
            extra = None if item is _NO_LOOP else {"item": item}
            result = self._execute(task.type, task.data, task.name, context, report, extra=extra)
            if not self._record(task, result, context, report):
                report.results.extend(self._skipped(host, task, "host failed") for _ in items[index + 1:])
                return False
        return True

    def _run_handlers(self, handlers: list[HandlerSpec], context: TaskContext, report: HostReport) -> None:
        for index, handler in enumerate(handlers):
            if self._cancel.is_set():
                report.results.extend(
                    self._skipped(context.host, rest, "cancelled", handler=True) for rest in handlers[index:]
                )
                return
            result = self._execute(handler.type, handler.data, handler.name, context, report)
            result.handler = True
            report.results.append(result)
            if result.failed:
                report.state = HostState.FAILED
                report.error = f"handler '{handler.name}' failed: {result.details}"
                self._host_failed()
                report.results.extend(
                    self._skipped(context.host, rest, "host failed", handler=True) for rest in handlers[index + 1:]
                )
                return

    def _execute(
        self,
        op_type: str,
        data: dict[str, Any],
        name: str,
        context: TaskContext,
        report: HostReport,
        *,
        extra: Optional[dict[str, Any]] = None,
    ) -> ActionResult:
        host = context.host
        operation_cls = OPERATION_REGISTRY.get(op_type)
        if not operation_cls:
            return self._failure(host, op_type, name, TaskError(f"unknown operation '{op_type}'"), data=data)
        try:
            params = self.renderer.render_value(data, context.variables, extra=extra)
            operation: Operation = operation_cls(params)
        except (MarionetteError, ValueError) as exc:
            return self._failure(host, op_type, name, exc, data=data)

        handling = report.state == HostState.HANDLING
        try:
            if not handling:
                report.state = HostState.GATHERING
            facts = operation.gather(context)
            if not handling:
                report.state = HostState.EXECUTING
            result = operation.apply(context, facts)
        except FactError as exc:
            return self._failure(host, op_type, name, exc, resource=operation.resource())
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "action=%s host=%s failed: %s",
                op_type,
                host.name,
                self.redactor.redact(str(exc)),
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return self._failure(host, op_type, name, exc, resource=operation.resource())

        result.task = name
        result.details = self.redactor.redact(result.details)
        if result.resource is None:
            result.resource = operation.resource()
        logger.debug("action=%s host=%s changed=%s", op_type, host.name, result.changed)
        return result

    def _record(self, task: TaskSpec, result: ActionResult, context: TaskContext, report: HostReport) -> bool:
        report.results.append(result)
        if result.failed:
            if task.tolerate_failure or not task.critical:
                result.tolerated = True
                logger.info("host=%s task=%s failed (tolerated)", context.host.name, task.name)
                return True
            report.state = HostState.FAILED
            report.error = f"task '{task.name}' failed: {result.details}"
            self._host_failed()
            return False
        if result.changed and task.notify:
            context.notify(task.notify)
        return True

    def _loop_items(self, task: TaskSpec, context: TaskContext) -> list[Any]:
        if task.loop is None:
            return [_NO_LOOP]
        items = self.renderer.render_value(task.loop, context.variables)
        if isinstance(items, dict):
            return [{"key": key, "value": value} for key, value in items.items()]
        if not isinstance(items, (list, tuple)):
            raise TaskError("loop must evaluate to a list")
        return list(items)

    def _notified_handlers(self, context: TaskContext) -> list[HandlerSpec]:
        return [handler for handler in self.playbook.handlers if handler.name in context.notified]

    def _tasks_for(self, host: Host) -> list[TaskSpec]:
        tasks: list[TaskSpec] = []
        for play in self.playbook.plays:
            if any(h.name == host.name for h in select_hosts(self.inventory, play.hosts, self.limit)):
                tasks.extend(play.tasks)
        return tasks

    def _host_failed(self) -> None:
        if self.config.any_errors_fatal:
            logger.warning("any_errors_fatal set; cancelling remaining hosts")
            self._cancel.set()

    def _failure(
        self,
        host: Host,
        action: str,
        name: str,
        exc: BaseException,
        *,
        data: Optional[dict[str, Any]] = None,
        resource: Optional[str] = None,
    ) -> ActionResult:
        if resource is None and data is not None:
            for key in ("name", "path", "user"):
                value = data.get(key)
                if isinstance(value, str) and "{{" not in value:
                    resource = value
                    break
        return ActionResult(
            host=host.name,
            action=action,
            changed=False,
            details=self.redactor.redact(str(exc)) or type(exc).__name__,
            failed=True,
            resource=resource,
            task=name,
        )

    @staticmethod
    def _skipped(host: Host, spec: TaskSpec | HandlerSpec, reason: str, *, handler: bool = False) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=spec.type,
            changed=False,
            details=f"skipped ({reason})",
            task=spec.name,
            skipped=True,
            handler=handler,
        )

    def _open_connection(self, host: Host, variables: Mapping[str, Any]) -> Connection:
        return open_connection(host, self.config, dry_run=self.dry_run, variables=variables)

    def _template_path(self) -> list[Path]:
        paths: list[Path] = []
        base = self.playbook.base_dir
        if base is not None:
            paths.extend([base, base / "templates"])
        if self.config.template_dir is not None:
            paths.append(self.config.template_dir)
        return paths


_NO_LOOP = object()


def target_hosts(playbook: Playbook, inventory: Inventory, limit: Optional[str] = None) -> list[Host]:
    """Every host any play targets, in first-seen order."""

    seen: dict[str, Host] = {}
    for play in playbook.plays:
        for host in select_hosts(inventory, play.hosts, limit):
            seen.setdefault(host.name, host)
    return list(seen.values())
