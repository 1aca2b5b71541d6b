from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional
import logging

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

import yaml

from .errors import ConfigError
from .types import Host, Inventory

logger = logging.getLogger(__name__)

CONNECTION_TYPES = {"ssh", "local"}
_HOST_KEYS = {"address", "port", "user", "private_key", "connection", "become", "vars"}
_CONNECTION_KEYS = ("address", "port", "user", "private_key", "connection", "become")


def read_document(path: Path) -> Any:
    """Parse a YAML, JSON or TOML file, chosen by suffix."""

    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise ConfigError(f"{path}: {exc.strerror or exc}") from None
    if path.suffix.lower() == ".toml":
        try:
            return tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{path}: {exc}") from None
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f"{mark.line + 1}:{mark.column + 1} " if mark is not None else ""
        problem = getattr(exc, "problem", None) or str(exc)
        raise ConfigError(f"{path}:{where}{problem}") from None


class InventoryLoader:
    """Loads hosts, groups and their variables from YAML or TOML files."""

    def load(self, path: Path) -> Inventory:
        data = read_document(path)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: inventory must be a mapping")
        try:
            return self.parse(data)
        except ConfigError as exc:
            raise ConfigError(f"{path}: {exc}") from None

    def parse(self, data: dict[str, Any]) -> Inventory:
        variables = _mapping(data.get("vars"), "vars")
        raw_groups = _mapping(data.get("groups"), "groups")

        entries: dict[str, dict[str, Any]] = {}
        memberships: dict[str, list[str]] = {}
        groups: dict[str, list[str]] = {}
        group_variables: dict[str, dict[str, Any]] = {}

        ungrouped = _mapping(data.get("hosts"), "hosts")
        for name, payload in ungrouped.items():
            self._add_host(entries, memberships, str(name), payload, group=None)

        for group_name, group_data in raw_groups.items():
            group_name = str(group_name)
            if group_name == "all":
                raise ConfigError("'all' is reserved and cannot be declared as a group")
            group_data = _mapping(group_data, f"groups.{group_name}")
            group_variables[group_name] = _mapping(group_data.get("vars"), f"groups.{group_name}.vars")
            hosts = group_data.get("hosts") or {}
            if isinstance(hosts, list):
                hosts = {str(name): {} for name in hosts}
            hosts = _mapping(hosts, f"groups.{group_name}.hosts")
            groups[group_name] = []
            for host_name, payload in hosts.items():
                host_name = str(host_name)
                self._add_host(entries, memberships, host_name, payload, group=group_name)
                groups[group_name].append(host_name)

        hosts_by_name = {
            name: self._build_host(name, entry, memberships.get(name, []))
            for name, entry in entries.items()
        }
        logger.debug("Loaded %d hosts in %d groups", len(hosts_by_name), len(groups))
        return Inventory(
            hosts=hosts_by_name,
            groups=groups,
            variables=variables,
            group_variables=group_variables,
        )

    @staticmethod
    def _add_host(
        entries: dict[str, dict[str, Any]],
        memberships: dict[str, list[str]],
        name: str,
        payload: Any,
        *,
        group: Optional[str],
    ) -> None:
        payload = _mapping(payload, f"host {name}")
        unknown = set(payload) - _HOST_KEYS
        if unknown:
            raise ConfigError(f"host {name}: unknown keys {', '.join(sorted(unknown))}")
        entry = entries.setdefault(name, {"vars": {}})
        for key in _CONNECTION_KEYS:
            if key not in payload:
                continue
            if key in entry and entry[key] != payload[key]:
                raise ConfigError(f"host {name}: conflicting '{key}' across groups")
            entry[key] = payload[key]
        entry["vars"].update(_mapping(payload.get("vars"), f"host {name} vars"))
        if group is not None:
            memberships.setdefault(name, []).append(group)

    @staticmethod
    def _build_host(name: str, entry: dict[str, Any], groups: list[str]) -> Host:
        connection = str(entry.get("connection", "ssh"))
        if connection not in CONNECTION_TYPES:
            raise ConfigError(f"host {name}: unknown connection type '{connection}'")
        try:
            port = int(entry.get("port", 22))
        except (TypeError, ValueError):
            raise ConfigError(f"host {name}: port must be an integer") from None
        become = entry.get("become", False)
        if not isinstance(become, bool):
            raise ConfigError(f"host {name}: become must be true or false")
        return Host(
            name=name,
            address=str(entry["address"]) if entry.get("address") else None,
            port=port,
            user=str(entry["user"]) if entry.get("user") else None,
            private_key=str(entry["private_key"]) if entry.get("private_key") else None,
            connection=connection,
            become=become,
            groups=tuple(groups),
            variables=dict(entry["vars"]),
        )


def select_hosts(inventory: Inventory, pattern: str, limit: Optional[str] = None) -> list[Host]:
    """Hosts matching a play's ``hosts`` pattern, narrowed by ``--limit``.

    Patterns are comma separated group or host names; ``all`` matches
    every host.
    """

    selected = _match(inventory, _split(pattern))
    if limit:
        allowed = {host.name for host in _match(inventory, _split(limit))}
        selected = [host for host in selected if host.name in allowed]
    return selected


def validate_limit(inventory: Inventory, limit: Optional[str]) -> None:
    if not limit:
        return
    for part in _split(limit):
        if not inventory.hosts_in(part):
            raise ConfigError(f"--limit '{part}' matches no group or host")


def _match(inventory: Inventory, patterns: Iterable[str]) -> list[Host]:
    seen: dict[str, Host] = {}
    for pattern in patterns:
        for host in inventory.hosts_in(pattern):
            seen.setdefault(host.name, host)
    return list(seen.values())


def _split(pattern: str) -> list[str]:
    return [part.strip() for part in str(pattern).split(",") if part.strip()]


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return dict(value)
