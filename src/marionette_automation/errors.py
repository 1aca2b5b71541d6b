"""Error taxonomy shared by the resolver, connections, operations and runner."""

from __future__ import annotations

from typing import Optional


class MarionetteError(Exception):
    """Base class for every error raised by marionette."""


class ConfigError(MarionetteError, ValueError):
    """Bad or missing variables, or malformed inventory/playbook declarations.

    Raised before any host is contacted and fatal to the whole run.
    """


class ConnectionError(MarionetteError):  # noqa: A001
    """Transient transport failure; retried by the connection layer."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class AuthenticationError(ConnectionError):
    """Credential or host key rejected. Never retried."""


class TimeoutError(ConnectionError):  # noqa: A001
    """A connect or command round-trip exceeded its timeout."""


class FactError(MarionetteError):
    """Remote state could not be read (permission denied, probe failure)."""


class TemplateError(MarionetteError):
    """A template could not be rendered, e.g. an undefined variable."""


class TaskError(MarionetteError):
    """A task's reconciling action failed on the remote host."""
