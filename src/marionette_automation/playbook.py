from __future__ import annotations

from pathlib import Path
from typing import Any
import logging

from .errors import ConfigError
from .inventory import read_document
from .operations import OPERATION_REGISTRY
from .types import HandlerSpec, PlaySpec, Playbook, TaskSpec, VariableDecl

logger = logging.getLogger(__name__)

VARIABLE_TYPES = {"str", "int", "bool", "list", "mapping", "accounts"}
_TASK_META_KEYS = {"name", "notify", "loop", "critical", "tolerate_failure"}


class PlaybookLoader:
    """Parses plays, tasks, handlers and declared variables."""

    def load(self, path: Path) -> Playbook:
        path = Path(path)
        data = read_document(path)
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: playbook must be a mapping")
        try:
            return self.parse(data, base_dir=path.resolve().parent)
        except ConfigError as exc:
            raise ConfigError(f"{path}: {exc}") from None

    def parse(self, data: dict[str, Any], *, base_dir: Path | None = None) -> Playbook:
        defaults = data.get("defaults") or {}
        if not isinstance(defaults, dict):
            raise ConfigError("defaults must be a mapping")
        variables = self._parse_variables(data.get("variables") or {})

        raw_plays = data.get("plays")
        if not isinstance(raw_plays, list) or not raw_plays:
            raise ConfigError("playbook needs a non-empty 'plays' list")

        handlers: list[HandlerSpec] = []
        for raw in _as_items(data.get("handlers"), "handlers"):
            handlers.append(self._parse_handler(raw, f"handler {len(handlers) + 1}"))

        plays: list[PlaySpec] = []
        for index, raw_play in enumerate(raw_plays, start=1):
            if not isinstance(raw_play, dict):
                raise ConfigError(f"play {index} must be a mapping")
            name = str(raw_play.get("name") or f"play-{index}")
            hosts = raw_play.get("hosts")
            if not hosts:
                raise ConfigError(f"play '{name}' is missing 'hosts'")
            if isinstance(hosts, list):
                hosts = ",".join(str(h) for h in hosts)
            tasks = [
                self._parse_task(raw_task, f"{name} task {pos}")
                for pos, raw_task in enumerate(_as_items(raw_play.get("tasks"), f"play '{name}' tasks"), start=1)
            ]
            for raw in _as_items(raw_play.get("handlers"), f"play '{name}' handlers"):
                handlers.append(self._parse_handler(raw, f"handler {len(handlers) + 1}"))
            plays.append(PlaySpec(name=name, hosts=str(hosts), tasks=tasks))

        self._check_handlers(plays, handlers)
        logger.debug("Loaded %d plays and %d handlers", len(plays), len(handlers))
        return Playbook(
            plays=plays,
            handlers=handlers,
            defaults=dict(defaults),
            variables=variables,
            base_dir=base_dir,
        )

    def _parse_task(self, raw: Any, where: str) -> TaskSpec:
        if not isinstance(raw, dict):
            raise ConfigError(f"{where} must be a mapping")
        op_type, data = self._split_operation(raw, _TASK_META_KEYS, where)
        notify = raw.get("notify") or []
        if isinstance(notify, str):
            notify = [notify]
        name = str(raw.get("name") or f"{op_type} {data.get('name') or data.get('path') or ''}".strip())
        return TaskSpec(
            name=name,
            type=op_type,
            data=data,
            notify=tuple(str(item) for item in notify),
            loop=raw.get("loop"),
            critical=_flag(raw.get("critical", True), "critical", where),
            tolerate_failure=_flag(raw.get("tolerate_failure", False), "tolerate_failure", where),
        )

    def _parse_handler(self, raw: Any, where: str) -> HandlerSpec:
        if not isinstance(raw, dict):
            raise ConfigError(f"{where} must be a mapping")
        name = raw.get("name")
        if not name:
            raise ConfigError(f"{where} is missing a name")
        op_type, data = self._split_operation(raw, {"name"}, f"handler '{name}'")
        return HandlerSpec(name=str(name), type=op_type, data=data)

    @staticmethod
    def _split_operation(raw: dict[str, Any], meta: set[str], where: str) -> tuple[str, dict[str, Any]]:
        if "type" in raw:
            op_type = str(raw["type"])
            data = {k: v for k, v in raw.items() if k not in meta and k != "type"}
        else:
            candidates = [key for key in raw if key not in meta]
            if len(candidates) != 1:
                raise ConfigError(f"{where} must declare exactly one operation")
            op_type = str(candidates[0])
            params = raw[op_type]
            if params is None:
                params = {}
            if not isinstance(params, dict):
                raise ConfigError(f"{where}: parameters of '{op_type}' must be a mapping")
            data = dict(params)
        if op_type not in OPERATION_REGISTRY:
            raise ConfigError(f"{where}: unknown operation '{op_type}'")
        return op_type, data

    @staticmethod
    def _parse_variables(raw: Any) -> dict[str, VariableDecl]:
        if not isinstance(raw, dict):
            raise ConfigError("variables must be a mapping")
        decls: dict[str, VariableDecl] = {}
        for name, spec in raw.items():
            name = str(name)
            if isinstance(spec, str):
                spec = {"type": spec}
            elif spec is None:
                spec = {}
            if not isinstance(spec, dict):
                raise ConfigError(f"variable '{name}' declaration must be a mapping")
            var_type = str(spec.get("type", "str"))
            if var_type not in VARIABLE_TYPES:
                raise ConfigError(f"variable '{name}' has unknown type '{var_type}'")
            decls[name] = VariableDecl(
                name=name,
                type=var_type,
                required=_flag(spec.get("required", False), "required", f"variable '{name}'"),
                secret=_flag(spec.get("secret", False), "secret", f"variable '{name}'"),
                default=spec.get("default"),
                has_default="default" in spec,
            )
        return decls

    @staticmethod
    def _check_handlers(plays: list[PlaySpec], handlers: list[HandlerSpec]) -> None:
        names: set[str] = set()
        for handler in handlers:
            if handler.name in names:
                raise ConfigError(f"handler '{handler.name}' is declared twice")
            names.add(handler.name)
        for play in plays:
            for task in play.tasks:
                referenced = list(task.notify)
                if task.type == "notify":
                    value = task.data.get("handlers") or task.data.get("handler") or task.data.get("name")
                    if isinstance(value, str) and "{{" not in value:
                        referenced.extend(part.strip() for part in value.split(",") if part.strip())
                    elif isinstance(value, list):
                        referenced.extend(str(v) for v in value if "{{" not in str(v))
                for name in referenced:
                    if name not in names:
                        raise ConfigError(f"task '{task.name}' notifies unknown handler '{name}'")


def _as_items(value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return value


def _flag(value: Any, key: str, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{where}: '{key}' must be true or false")
    return value
