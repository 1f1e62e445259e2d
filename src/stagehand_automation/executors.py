from __future__ import annotations

import base64
import logging
import shlex
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

import paramiko

from .errors import TransportError
from .types import HostTarget

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]


@dataclass
class CommandResult:
    command: str
    stdout: str
    stderr: str
    returncode: int


def render_command(
    command: Command,
    *,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Union[str, Path]] = None,
) -> str:
    """Turn ``command`` into a single shell script line."""
    if isinstance(command, str):
        script = command
    else:
        script = " ".join(shlex.quote(str(part)) for part in command)
    if env:
        exports = " ".join(f"{key}={shlex.quote(str(value))}" for key, value in env.items())
        script = f"export {exports}; {script}"
    if cwd is not None:
        script = f"cd {shlex.quote(str(cwd))} && {script}"
    return script


class Session:
    """Control channel to one host, used by step modules."""

    def __init__(self, target: HostTarget, *, dry_run: bool = False):
        self.target = target
        self.dry_run = dry_run

    def execute(
        self,
        command: Command,
        *,
        become_user: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        mutable: bool = True,
        check: bool = False,
        redact: Sequence[str] = (),
    ) -> CommandResult:
        """Run ``command`` as ``become_user`` (the login user when ``None``).

        Mutable commands are skipped during dry-runs. Values listed in ``redact``
        are masked in logs and in the returned ``CommandResult.command``.
        """
        rendered = render_command(command, env=env, cwd=cwd)
        script = self.wrap_identity(rendered, become_user)
        # Mask before wrapping: sudo quoting would split secrets containing quotes.
        shown = self.wrap_identity(_mask(rendered, redact), become_user)
        if self.dry_run and mutable:
            return CommandResult(shown, "", "skipped (dry-run)", 0)
        logger.debug("host=%s exec=%s", self.target.name, shown)
        result = self._execute(script, timeout=timeout)
        result.command = shown
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, shown, result.stdout, result.stderr
            )
        return result

    def wrap_identity(self, script: str, become_user: Optional[str]) -> str:
        if not become_user or become_user == self.target.user:
            return script
        return f"sudo -n -H -u {shlex.quote(become_user)} -- sh -c {shlex.quote(script)}"

    def read_file(self, path: str, *, become_user: Optional[str] = None) -> Optional[str]:
        result = self.execute(
            ["cat", path], become_user=become_user, mutable=False
        )
        if result.returncode != 0:
            return None
        return result.stdout

    def write_file(
        self,
        path: str,
        content: str,
        *,
        mode: Optional[int] = None,
        become_user: Optional[str] = None,
    ) -> CommandResult:
        encoded = base64.b64encode(content.encode()).decode()
        quoted = shlex.quote(path)
        script = (
            f"mkdir -p \"$(dirname {quoted})\" && "
            f"printf %s {shlex.quote(encoded)} | base64 -d > {quoted}"
        )
        if mode is not None:
            script = f"{script} && chmod {mode:04o} {quoted}"
        return self.execute(script, become_user=become_user, check=True)

    def put_file(
        self,
        local_path: Union[str, Path],
        remote_path: str,
        *,
        mode: Optional[int] = None,
        become_user: Optional[str] = None,
    ) -> CommandResult:
        """Copy a local text file to ``remote_path`` on the host."""
        content = Path(local_path).expanduser().read_text()
        return self.write_file(remote_path, content, mode=mode, become_user=become_user)

    def close(self) -> None:
        """Release the underlying connection."""

    def _execute(self, script: str, *, timeout: Optional[float]) -> CommandResult:
        raise NotImplementedError

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LocalSession(Session):
    """Runs commands on the machine running the toolkit."""

    def _execute(self, script: str, *, timeout: Optional[float]) -> CommandResult:
        try:
            proc = subprocess.run(
                ["sh", "-c", script],
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransportError(f"command timed out after {timeout}s: {script}") from exc
        return CommandResult(script, proc.stdout, proc.stderr, proc.returncode)


class SshSession(Session):
    """Runs commands over SSH using paramiko."""

    def __init__(
        self,
        target: HostTarget,
        *,
        dry_run: bool = False,
        key_file: Optional[Path] = None,
        connect_timeout: float = 10.0,
        client_factory=paramiko.SSHClient,
    ):
        super().__init__(target, dry_run=dry_run)
        self.key_file = key_file
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None

    def open(self) -> "SshSession":
        if self._client is None:
            self._client = self._connect()
        return self

    def _connect(self) -> paramiko.SSHClient:
        if not self.target.address:
            raise TransportError(f"host {self.target.name} has no address")
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        key_filename = str(Path(self.key_file).expanduser()) if self.key_file else None
        try:
            client.connect(
                self.target.address,
                port=self.target.port,
                username=self.target.user,
                key_filename=key_filename,
                look_for_keys=key_filename is None,
                allow_agent=key_filename is None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(
                f"Cannot connect to {self.target.user}@{self.target.address}:{self.target.port}: {exc}"
            ) from exc
        return client

    def _execute(self, script: str, *, timeout: Optional[float]) -> CommandResult:
        if self._client is None:
            self._client = self._connect()
        client = self._client
        try:
            _, stdout, stderr = client.exec_command(script, timeout=timeout)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            returncode = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            raise TransportError(f"{self.target.name}: {exc}") from exc
        return CommandResult(script, out, err, returncode)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def connect(
    target: HostTarget,
    *,
    dry_run: bool = False,
    key_file: Optional[Path] = None,
) -> Session:
    """Open a session for ``target`` based on its connection type."""
    if target.connection == "local":
        return LocalSession(target, dry_run=dry_run)
    if target.connection == "ssh":
        return SshSession(
            target, dry_run=dry_run, key_file=key_file or _key_path(target.credential)
        ).open()
    raise ValueError(f"Unknown connection type '{target.connection}'")


def _key_path(credential: Optional[str]) -> Optional[Path]:
    if not credential:
        return None
    return Path(credential).expanduser()


def _mask(script: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            script = script.replace(str(secret), "***")
    return script
