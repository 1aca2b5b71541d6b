from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any, Iterable, Sequence

from .base import Operation, TaskContext
from ..connections import CommandResult
from ..facts import CommandFacts
from ..types import ActionResult


class CommandOperation(Operation):
    """Run a command with simple guards, mirroring Puppet's exec."""

    action = "command"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_command = spec.get("command") or spec.get("cmd")
        if raw_command is None:
            raise ValueError("command operation requires a command")
        self.command = self._normalize_command(raw_command)
        self.name = str(spec.get("name") or " ".join(self.command))

        self.only_if = self._normalize_command(spec["only_if"]) if "only_if" in spec else None
        self.unless = self._normalize_command(spec["unless"]) if "unless" in spec else None

        self.creates = str(spec["creates"]) if "creates" in spec else None
        self.cwd = str(spec["cwd"]) if "cwd" in spec else None

        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))

        returns = spec.get("returns", [0])
        self.allowed_returns = self._normalize_returns(returns)
        self.timeout = self._normalize_timeout(spec.get("timeout"))

    def resource(self) -> str:
        return self.name

    def gather(self, context: TaskContext) -> CommandFacts:
        facts = CommandFacts()
        if self.creates:
            facts.creates_exists = context.facts.path_exists(self._resolve_path(self.creates))
            if facts.creates_exists:
                return facts
        if self.only_if:
            facts.only_if_rc = self._run_guard(self.only_if, context).returncode
            if facts.only_if_rc != 0:
                return facts
        if self.unless:
            facts.unless_rc = self._run_guard(self.unless, context).returncode
        return facts

    def apply(self, context: TaskContext, facts: CommandFacts) -> ActionResult:
        host = context.host.name
        if facts.creates_exists:
            detail = f"skipped (creates {self.creates})"
            return ActionResult(host=host, action=self.action, changed=False, details=detail, resource=self.name)
        if facts.only_if_rc not in (None, 0):
            detail = f"skipped (only_if rc={facts.only_if_rc})"
            return ActionResult(host=host, action=self.action, changed=False, details=detail, resource=self.name)
        if facts.unless_rc == 0:
            detail = "skipped (unless rc=0)"
            return ActionResult(host=host, action=self.action, changed=False, details=detail, resource=self.name)

        result = context.connection.run(
            self.command,
            check=False,
            mutable=True,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )

        if result.returncode not in self.allowed_returns:
            return ActionResult(
                host=host,
                action=self.action,
                changed=False,
                details=self._error_detail(result),
                failed=True,
                resource=self.name,
            )

        detail = "ran (check)" if context.dry_run else f"ran (rc={result.returncode})"
        return ActionResult(host=host, action=self.action, changed=True, details=detail, resource=self.name)

    def _run_guard(self, command: Sequence[str], context: TaskContext) -> CommandResult:
        return context.connection.run(
            command,
            check=False,
            mutable=False,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )

    def _resolve_path(self, path: str) -> str:
        if path.startswith("/") or self.cwd is None:
            return path
        return str(PurePosixPath(self.cwd) / path)

    @staticmethod
    def _normalize_command(value: Any) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", value]
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError("command must be a string or list")

    @staticmethod
    def _normalize_env(value: Any) -> dict[str, str] | None:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("command env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("command returns must be an int or list of ints")

    @staticmethod
    def _normalize_timeout(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:  # noqa: PERF203
            raise ValueError("command timeout must be numeric") from exc

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        message = result.summary()
        prefix = f"rc={result.returncode}"
        if message:
            return f"{prefix}: {message}"
        return prefix
