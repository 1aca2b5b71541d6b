from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any, Iterable, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

from .errors import ConfigError

MASK = "********"


def is_secret_reference(value: Any) -> bool:
    return isinstance(value, dict) and "aws_secret" in value


class SecretResolver:
    """Resolves secret references in variable mappings."""

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        if boto3 is None:
            raise ConfigError("boto3 is required to resolve aws_secret references")
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        if cache_key in self._cache:
            return self._cache[cache_key]

        client = boto3.client("secretsmanager")
        try:
            response = client.get_secret_value(SecretId=name)
        except Exception as exc:  # noqa: BLE001
            raise ConfigError(f"Unable to read secret {name}: {exc}") from None
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise ConfigError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
                value = payload[str(key)]
            except (json.JSONDecodeError, KeyError, TypeError):
                raise ConfigError(f"Secret {name} has no key '{key}'") from None

        self._cache[cache_key] = value
        return value


class SecretRedactor:
    """Masks known secret values in free text."""

    def __init__(self, values: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._values: set[str] = set()
        self.add(values)

    def add(self, values: Iterable[str]) -> None:
        with self._lock:
            for value in values:
                text = str(value)
                # very short values would mask unrelated text
                if len(text) >= 4:
                    self._values.add(text)
                    stripped = text.strip()
                    if len(stripped) >= 4:
                        self._values.add(stripped)

    def redact(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for value in values:
            if value in text:
                text = text.replace(value, MASK)
        return text


class RedactingFilter(logging.Filter):
    """Logging filter that masks secret values in rendered log messages."""

    def __init__(self, redactor: SecretRedactor):
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True
