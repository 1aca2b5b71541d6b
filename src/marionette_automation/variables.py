"""Layered variable resolution.

Each host gets one immutable :class:`VariableSet`, merged lowest to highest
from playbook defaults, inventory-wide vars, group vars (inventory order),
host vars, environment-injected values and ``--extra-vars``. Everything is
validated here so configuration mistakes surface before any host is
contacted.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence
import logging
import os

import yaml

from .config import DEFAULT_ENV_PREFIX, MarionetteConfig
from .errors import ConfigError
from .inventory import read_document
from .secrets import SecretResolver, is_secret_reference
from .types import Host, Inventory, Playbook, VariableDecl, VariableSet

logger = logging.getLogger(__name__)

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}
_ACCOUNT_KEYS = {"name", "shell", "groups", "password_hash"}
_INJECTED = {"env", "extra"}
_IMPLICIT_SECRETS = {"ssh_private_key"}


def parse_extra_vars(items: Iterable[str]) -> dict[str, Any]:
    """Turn ``KEY=VALUE`` and ``@file`` arguments into a mapping."""

    values: dict[str, Any] = {}
    for item in items:
        if item.startswith("@"):
            data = read_document(Path(item[1:]).expanduser())
            if data is None:
                continue
            if not isinstance(data, dict):
                raise ConfigError(f"extra vars file {item[1:]} must contain a mapping")
            values.update(data)
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"extra vars must be KEY=VALUE or @file, got '{key}'")
        values[key.strip()] = value
    return values


def env_variables(environ: Mapping[str, str], prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, str]:
    return {
        key[len(prefix):].lower(): value
        for key, value in environ.items()
        if key.startswith(prefix) and len(key) > len(prefix)
    }


class VariableResolver:
    def __init__(
        self,
        playbook: Playbook,
        inventory: Inventory,
        config: Optional[MarionetteConfig] = None,
        *,
        extra_vars: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        secret_resolver: Optional[SecretResolver] = None,
    ):
        self.playbook = playbook
        self.inventory = inventory
        self.config = config or MarionetteConfig()
        self.secret_resolver = secret_resolver or SecretResolver()
        environ = os.environ if environ is None else environ
        self._env = self._resolve_layer(env_variables(environ, self.config.env_prefix))
        self._extra = self._resolve_layer(dict(extra_vars or {}))
        self._defaults = self._resolve_layer(
            {
                **{d.name: d.default for d in playbook.variables.values() if d.has_default},
                **playbook.defaults,
            }
        )
        self._inventory_vars = self._resolve_layer(inventory.variables)
        self._group_vars = {
            name: self._resolve_layer(values) for name, values in inventory.group_variables.items()
        }

    def resolve(self, hosts: Optional[Sequence[Host]] = None) -> dict[str, VariableSet]:
        if hosts is None:
            hosts = list(self.inventory.hosts.values())
        return {host.name: self.resolve_host(host) for host in hosts}

    def resolve_host(self, host: Host) -> VariableSet:
        values: dict[str, Any] = {}
        sources: dict[str, str] = {}
        from_references: set[str] = set()

        layers: list[tuple[str, tuple[dict[str, Any], set[str]]]] = [
            ("defaults", self._defaults),
            ("inventory", self._inventory_vars),
        ]
        layers.extend(("inventory", self._group_vars.get(group, ({}, set()))) for group in host.groups)
        layers.append(("inventory", self._resolve_layer(host.variables)))
        layers.append(("env", self._env))
        layers.append(("extra", self._extra))

        for source, (layer, referenced) in layers:
            for name, value in layer.items():
                values[name] = value
                sources[name] = source
                if name in referenced:
                    from_references.add(name)
                else:
                    from_references.discard(name)

        secrets: set[str] = set(from_references)
        for name, decl in self.playbook.variables.items():
            if name not in values or values[name] is None:
                if decl.required:
                    raise ConfigError(f"host {host.name}: required variable '{name}' is not set")
                continue
            values[name] = self._coerce(decl, values[name], host)
            if decl.secret:
                secrets.add(name)
                self._check_plaintext(decl, sources[name], name in from_references, host)
        secrets.update(name for name in _IMPLICIT_SECRETS if name in values)
        return VariableSet(values, frozenset(secrets))

    def _resolve_layer(self, layer: Mapping[str, Any]) -> tuple[dict[str, Any], set[str]]:
        resolved: dict[str, Any] = {}
        referenced: set[str] = set()
        for name, value in layer.items():
            name = str(name)
            if _contains_reference(value):
                if is_secret_reference(value):
                    referenced.add(name)
                try:
                    value = self.secret_resolver.resolve({name: value})[name]
                except ConfigError as exc:
                    raise ConfigError(f"variable '{name}': {exc}") from None
            resolved[name] = value
        return resolved, referenced

    def _check_plaintext(self, decl: VariableDecl, source: str, referenced: bool, host: Host) -> None:
        if referenced or source in _INJECTED:
            return
        message = (
            f"host {host.name}: secret variable '{decl.name}' is set in plaintext {source}; "
            f"inject it via {self.config.env_prefix}{decl.name.upper()} or a secret reference"
        )
        if not self.config.allow_plaintext_secrets:
            raise ConfigError(message)
        logger.warning(message)

    def _coerce(self, decl: VariableDecl, value: Any, host: Host) -> Any:
        where = f"host {host.name}: variable '{decl.name}'"
        kind = decl.type
        if kind == "str":
            if isinstance(value, (dict, list)):
                raise ConfigError(f"{where} must be a string")
            return str(value)
        if kind == "int":
            if isinstance(value, bool):
                raise ConfigError(f"{where} must be an integer")
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{where} must be an integer") from None
        if kind == "bool":
            if isinstance(value, bool):
                return value
            lowered = str(value).strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ConfigError(f"{where} must be a boolean")
        parsed = _parse_structured(value, where)
        if kind == "list":
            if not isinstance(parsed, list):
                raise ConfigError(f"{where} must be a list")
            return parsed
        if kind == "mapping":
            if not isinstance(parsed, dict):
                raise ConfigError(f"{where} must be a mapping")
            return parsed
        if kind == "accounts":
            return _validate_accounts(parsed, where)
        raise ConfigError(f"{where} has unknown type '{kind}'")


def _parse_structured(value: Any, where: str) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        # the parser message would quote the value
        raise ConfigError(f"{where} could not be parsed as YAML/JSON") from None


def _validate_accounts(value: Any, where: str) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list of account records")
    accounts: list[dict[str, Any]] = []
    seen: set[str] = set()
    for index, record in enumerate(value, start=1):
        if isinstance(record, str):
            record = {"name": record}
        if not isinstance(record, dict):
            raise ConfigError(f"{where}: record {index} must be a mapping")
        if "password" in record:
            raise ConfigError(f"{where}: record {index} has a plaintext 'password'; use 'password_hash'")
        unknown = set(record) - _ACCOUNT_KEYS
        if unknown:
            raise ConfigError(f"{where}: record {index} has unknown keys {', '.join(sorted(unknown))}")
        name = record.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"{where}: record {index} needs a 'name'")
        if name in seen:
            raise ConfigError(f"{where}: account '{name}' is listed twice")
        seen.add(name)
        account: dict[str, Any] = {"name": name}
        if record.get("shell") is not None:
            account["shell"] = str(record["shell"])
        groups = record.get("groups")
        if groups is not None:
            if isinstance(groups, str):
                groups = [g.strip() for g in groups.split(",") if g.strip()]
            if not isinstance(groups, list):
                raise ConfigError(f"{where}: groups of '{name}' must be a list")
            account["groups"] = [str(g) for g in groups]
        if record.get("password_hash") is not None:
            account["password_hash"] = str(record["password_hash"])
        accounts.append(account)
    return accounts


def _contains_reference(value: Any) -> bool:
    if is_secret_reference(value):
        return True
    if isinstance(value, dict):
        return any(_contains_reference(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_reference(v) for v in value)
    return False
