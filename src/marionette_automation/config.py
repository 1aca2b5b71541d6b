from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigError


DEFAULT_CONFIG = Path("/etc/marionette/main.conf")
DEFAULT_ENV_PREFIX = "MARIONETTE_VAR_"


@dataclass
class MarionetteConfig:
    inventory: Optional[Path] = None
    template_dir: Optional[Path] = None
    forks: int = 5
    connect_timeout: float = 10.0
    command_timeout: float = 300.0
    retries: int = 3
    retry_backoff: float = 1.0
    any_errors_fatal: bool = False
    host_key_checking: bool = True
    allow_plaintext_secrets: bool = False
    env_prefix: str = DEFAULT_ENV_PREFIX
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> MarionetteConfig:
    if not path.exists():
        return MarionetteConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    inventory = defaults.get("inventory")
    template_dir = defaults.get("template_dir")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    try:
        return MarionetteConfig(
            inventory=Path(inventory) if inventory else None,
            template_dir=Path(template_dir) if template_dir else None,
            forks=_positive_int(defaults.get("forks", 5), "forks"),
            connect_timeout=float(defaults.get("connect_timeout", 10.0)),
            command_timeout=float(defaults.get("command_timeout", 300.0)),
            retries=int(defaults.get("retries", 3)),
            retry_backoff=float(defaults.get("retry_backoff", 1.0)),
            any_errors_fatal=bool(defaults.get("any_errors_fatal", False)),
            host_key_checking=bool(defaults.get("host_key_checking", True)),
            allow_plaintext_secrets=bool(defaults.get("allow_plaintext_secrets", False)),
            env_prefix=str(defaults.get("env_prefix", DEFAULT_ENV_PREFIX)),
            aws_region=str(aws_region) if aws_region else None,
            aws_profile=str(aws_profile) if aws_profile else None,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path}: {exc}") from None


def _positive_int(value: Any, name: str) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"{name} must be at least 1")
    return number
