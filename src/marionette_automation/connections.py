from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence, Union
import io
import logging
import os
import shlex
import shutil
import socket
import subprocess
import tempfile
import time
import uuid

import paramiko

from . import errors
from .config import MarionetteConfig
from .types import Host

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def summary(self) -> str:
        for text in (self.stderr, self.stdout):
            stripped = (text or "").strip()
            if stripped:
                line = stripped.splitlines()[0]
                return (line[:157] + "...") if len(line) > 160 else line
        return ""


class Connection:
    """Base command/file-transfer channel used by facts and operations."""

    def __init__(
        self,
        host: Host,
        *,
        dry_run: bool = False,
        command_timeout: Optional[float] = None,
    ):
        self.host = host
        self.dry_run = dry_run
        self.command_timeout = command_timeout

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` on the host and optionally skip it during dry-runs."""

        cmd_list = [str(part) for part in command]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        argv = list(cmd_list)
        if env:
            argv = ["env", *[f"{key}={value}" for key, value in env.items()], *argv]
        if self.host.become:
            argv = ["sudo", "-n", "--", *argv]

        effective_timeout = timeout if timeout is not None else self.command_timeout
        result = self._execute(argv, cwd=cwd, timeout=effective_timeout, mutable=mutable)
        result.command = cmd_list
        if check and result.returncode != 0:
            message = f"{shlex.join(cmd_list)} exited with {result.returncode}"
            detail = result.summary()
            raise errors.TaskError(f"{message}: {detail}" if detail else message)
        return result

    def put(
        self,
        content: Union[str, bytes],
        remote_path: Union[str, Path],
        *,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Atomically replace ``remote_path`` with ``content``."""

        if self.dry_run:
            return
        data = content.encode() if isinstance(content, str) else content
        self._put(data, str(remote_path), mode=mode, owner=owner, group=group)

    def close(self) -> None:
        pass

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Transport primitives -------------------------------------------------
    def _execute(
        self,
        argv: list[str],
        *,
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
        mutable: bool,
    ) -> CommandResult:
        raise NotImplementedError

    def _put(
        self,
        data: bytes,
        remote_path: str,
        *,
        mode: Optional[int],
        owner: Optional[str],
        group: Optional[str],
    ) -> None:
        raise NotImplementedError


class LocalConnection(Connection):
    """Connection that acts directly on the local host."""

    def _execute(self, argv, *, cwd, timeout, mutable):  # type: ignore[override]
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise errors.TimeoutError(
                f"{shlex.join(argv)} timed out after {timeout}s", host=self.host.name
            ) from None
        except FileNotFoundError:
            return CommandResult(argv, "", f"{argv[0]}: command not found", 127)
        return CommandResult(argv, proc.stdout, proc.stderr, proc.returncode)

    def _put(self, data, remote_path, *, mode, owner, group):  # type: ignore[override]
        path = Path(remote_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".marionette-", dir=str(path.parent))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.chmod(tmp_name, DEFAULT_FILE_MODE if mode is None else mode)
            if owner or group:
                shutil.chown(tmp_name, user=_owner_id(owner), group=_owner_id(group))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class SSHConnection(Connection):
    """Connection over SSH (paramiko) with bounded retries for transient failures."""

    def __init__(
        self,
        host: Host,
        *,
        dry_run: bool = False,
        connect_timeout: float = 10.0,
        command_timeout: Optional[float] = 300.0,
        retries: int = 3,
        retry_backoff: float = 1.0,
        host_key_checking: bool = True,
        private_key_data: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(host, dry_run=dry_run, command_timeout=command_timeout)
        self.connect_timeout = connect_timeout
        self.retries = max(0, retries)
        self.retry_backoff = retry_backoff
        self.host_key_checking = host_key_checking
        self.private_key_data = private_key_data
        self._sleep = sleep
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp_client: Optional[paramiko.SFTPClient] = None

    def __repr__(self) -> str:
        user = f"{self.host.user}@" if self.host.user else ""
        return f"<SSHConnection {user}{self.host.target}:{self.host.port}>"

    def close(self) -> None:
        if self._sftp_client is not None:
            try:
                self._sftp_client.close()
            except Exception:  # noqa: BLE001
                logger.debug("Error closing sftp to %s", self.host.name, exc_info=True)
            self._sftp_client = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None

    def _execute(self, argv, *, cwd, timeout, mutable):  # type: ignore[override]
        script = shlex.join(argv)
        if cwd is not None:
            script = f"cd {shlex.quote(str(cwd))} && {script}"

        def attempt() -> CommandResult:
            client = self._client()
            try:
                _, stdout, stderr = client.exec_command(script, timeout=timeout)
                out = stdout.read().decode(errors="replace")
                err = stderr.read().decode(errors="replace")
                returncode = stdout.channel.recv_exit_status()
            except socket.timeout:
                self.close()
                raise errors.TimeoutError(
                    f"{script} timed out after {timeout}s", host=self.host.name
                ) from None
            except (paramiko.SSHException, EOFError, OSError) as exc:
                self.close()
                raise errors.ConnectionError(
                    f"{self.host.target}: {exc}", host=self.host.name
                ) from None
            return CommandResult(argv, out, err, returncode)

        if mutable:
            # Only establishing the session is retried; the command itself
            # is never re-issued once sent.
            self._retrying("connect", self._client)
            return attempt()
        return self._retrying("command", attempt)

    def _put(self, data, remote_path, *, mode, owner, group):  # type: ignore[override]
        tmp_path = f"/tmp/.marionette-{uuid.uuid4().hex}"

        def upload() -> None:
            client = self._client()
            try:
                if self._sftp_client is None:
                    self._sftp_client = client.open_sftp()
                with self._sftp_client.open(tmp_path, "wb") as handle:
                    handle.write(data)
                self._sftp_client.chmod(tmp_path, 0o600)
            except socket.timeout:
                self.close()
                raise errors.TimeoutError(f"upload to {tmp_path} timed out", host=self.host.name) from None
            except (paramiko.SSHException, EOFError, OSError) as exc:
                self.close()
                raise errors.ConnectionError(f"upload to {tmp_path} failed: {exc}", host=self.host.name) from None

        self._retrying("upload", upload)
        install = ["install", "-D", "-m", f"{DEFAULT_FILE_MODE if mode is None else mode:04o}"]
        if owner:
            install += ["-o", owner]
        if group:
            install += ["-g", group]
        try:
            self.run([*install, tmp_path, remote_path])
        finally:
            self.run(["rm", "-f", tmp_path], check=False)

    # Session handling ----------------------------------------------------
    def _client(self) -> paramiko.SSHClient:
        if self._ssh is None:
            self._ssh = self._connect()
        return self._ssh

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.host_key_checking:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        pkey = self._load_private_key()
        key_filename = str(Path(self.host.private_key).expanduser()) if self.host.private_key else None
        explicit_key = pkey is not None or key_filename is not None
        logger.debug("Connecting to %r", self)
        try:
            client.connect(
                self.host.target,
                port=self.host.port,
                username=self.host.user,
                pkey=pkey,
                key_filename=key_filename,
                look_for_keys=not explicit_key,
                allow_agent=not explicit_key,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise errors.AuthenticationError(
                f"{self.host.target}: authentication failed: {exc}", host=self.host.name
            ) from None
        except paramiko.BadHostKeyException as exc:
            client.close()
            raise errors.AuthenticationError(f"{self.host.target}: {exc}", host=self.host.name) from None
        except socket.timeout:
            client.close()
            raise errors.TimeoutError(
                f"{self.host.target}: connect timed out after {self.connect_timeout}s",
                host=self.host.name,
            ) from None
        except paramiko.SSHException as exc:
            client.close()
            if "known_hosts" in str(exc):
                raise errors.AuthenticationError(f"{self.host.target}: {exc}", host=self.host.name) from None
            raise errors.ConnectionError(f"{self.host.target}: {exc}", host=self.host.name) from None
        except OSError as exc:
            client.close()
            raise errors.ConnectionError(
                f"Cannot connect to {self.host.target}:{self.host.port}: {exc}", host=self.host.name
            ) from None
        return client

    def _load_private_key(self) -> Optional[paramiko.PKey]:
        if not self.private_key_data:
            return None
        for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
            try:
                return key_cls.from_private_key(io.StringIO(self.private_key_data))
            except paramiko.SSHException:
                continue
        raise errors.AuthenticationError("private key is not a supported OpenSSH/PEM key", host=self.host.name)

    def _retrying(self, what: str, func: Callable[[], Any]) -> Any:
        attempt = 0
        while True:
            try:
                return func()
            except errors.AuthenticationError:
                raise
            except errors.ConnectionError as exc:
                attempt += 1
                if attempt > self.retries:
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "%s on %s failed (%s); retry %d/%d in %.1fs",
                    what,
                    self.host.name,
                    exc,
                    attempt,
                    self.retries,
                    delay,
                )
                self._sleep(delay)


def open_connection(
    host: Host,
    config: MarionetteConfig,
    *,
    dry_run: bool = False,
    variables: Optional[Mapping[str, Any]] = None,
) -> Connection:
    if host.connection == "local":
        return LocalConnection(host, dry_run=dry_run, command_timeout=config.command_timeout)
    if host.connection == "ssh":
        key_data = (variables or {}).get("ssh_private_key")
        return SSHConnection(
            host,
            dry_run=dry_run,
            connect_timeout=config.connect_timeout,
            command_timeout=config.command_timeout,
            retries=config.retries,
            retry_backoff=config.retry_backoff,
            host_key_checking=config.host_key_checking,
            private_key_data=str(key_data) if key_data else None,
        )
    raise errors.ConfigError(f"Unknown connection type '{host.connection}'")


def _owner_id(value: Optional[str]) -> Union[str, int, None]:
    # numeric owners from fact snapshots are ids, not names
    if value is not None and str(value).isdigit():
        return int(value)
    return value
