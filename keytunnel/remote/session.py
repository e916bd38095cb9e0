"""Command sessions on the remote host.

Two session flavours are used, and they never mix authentication
methods:

- bootstrap: password or keyboard-interactive only; key files, the
  agent and ``~/.ssh`` key lookup are all disabled, so a stale key can
  never make provisioning silently succeed.
- key-only: the identity's private key only; password, interactive
  and agent authentication are disabled.

The core only needs "run this line, get exit status and stdout".
"""

from __future__ import annotations

import shlex
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import paramiko

from keytunnel.config.schema import Endpoint, SSHConfig
from keytunnel.errors import KeyMissing, RemoteCommandFailed, UnreachableRemote

AUTHORIZED_KEYS = "~/.ssh/authorized_keys"


@dataclass
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def remote_path(path: str) -> str:
    """Quote a remote path for sh, keeping a leading ``~/`` expandable."""
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def ensure_authorized_keys_command(path: str = AUTHORIZED_KEYS) -> str:
    """Create the key directory (0700) and key list (0600) if missing."""
    f = remote_path(path)
    return (
        "umask 077 && "
        f'd=$(dirname {f}) && mkdir -p "$d" && chmod 700 "$d" && '
        f"touch {f} && chmod 600 {f}"
    )


def append_line_command(path: str, line: str) -> str:
    """Shell command that appends ``line`` to ``path`` unless already present.

    Presence means some line of the file equals ``line`` exactly
    (``grep -x -F``): no prefix, substring or pattern matching. The file
    is only ever appended to. A missing trailing newline is repaired in
    the same write. Prints APPENDED or PRESENT.
    """
    if "\n" in line or "\r" in line:
        raise ValueError("line must not contain newlines")
    f = remote_path(path)
    q = shlex.quote(line)
    return (
        f"if grep -qxF -- {q} {f} 2>/dev/null; then echo PRESENT; "
        f"else {{ if [ -s {f} ] && [ -n \"$(tail -c1 {f})\" ]; "
        f"then printf '\\n%s\\n' {q}; else printf '%s\\n' {q}; fi; }} >> {f} "
        "&& echo APPENDED; fi"
    )


class RemoteSession(ABC):
    """Command channel to one remote account."""

    endpoint: Endpoint

    @abstractmethod
    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Execute one shell line and collect its exit status and output."""
        pass

    def close(self) -> None:
        pass

    def ensure_authorized_keys(self, path: str = AUTHORIZED_KEYS) -> None:
        result = self.run(ensure_authorized_keys_command(path))
        if not result.ok:
            raise RemoteCommandFailed(
                "could not prepare authorized keys",
                remote=self.endpoint, path=path, exit_status=result.exit_status,
                stderr=result.stderr.strip() or None,
            )

    def append_line(self, path: str, line: str) -> bool:
        """Idempotently append ``line`` to ``path``.

        Returns:
            True if the line was written, False if it was already present.
        """
        result = self.run(append_line_command(path, line))
        status = result.stdout.strip()
        if not result.ok or status not in ("APPENDED", "PRESENT"):
            raise RemoteCommandFailed(
                "append to authorized keys failed",
                remote=self.endpoint, path=path, exit_status=result.exit_status,
                stderr=result.stderr.strip() or None,
            )
        return status == "APPENDED"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ParamikoSession(RemoteSession):
    """RemoteSession backed by a connected paramiko.SSHClient."""

    def __init__(self, client: paramiko.SSHClient, endpoint: Endpoint, command_timeout: float):
        self.client = client
        self.endpoint = endpoint
        self.command_timeout = command_timeout

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        timeout = timeout or self.command_timeout
        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            stdin.close()
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            channel = stdout.channel
            if not channel.status_event.wait(timeout):
                raise socket.timeout(f"command did not finish within {timeout}s")
            return CommandResult(channel.exit_status, out, err)
        except (paramiko.SSHException, OSError) as e:
            raise UnreachableRemote(f"command failed: {e}", remote=self.endpoint) from e

    def close(self) -> None:
        self.client.close()


class SSHConnector:
    """Opens bootstrap and key-only sessions with explicit timeouts.

    Unknown host keys are accepted and recorded in the given per-identity
    known-hosts file only; a changed host key is refused.
    """

    def __init__(self, ssh: Optional[SSHConfig] = None):
        self.ssh = ssh or SSHConfig()

    def _client(self, known_hosts: Path) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if known_hosts.exists():
            client.load_host_keys(str(known_hosts))
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def _connect(self, client: paramiko.SSHClient, endpoint: Endpoint, **auth) -> None:
        try:
            client.connect(
                hostname=endpoint.host,
                port=endpoint.port,
                username=endpoint.user,
                timeout=self.ssh.connect_timeout,
                banner_timeout=self.ssh.banner_timeout,
                auth_timeout=self.ssh.auth_timeout,
                look_for_keys=False,
                allow_agent=False,
                **auth,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise UnreachableRemote(f"authentication failed: {e}", remote=endpoint) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise UnreachableRemote(f"connect failed: {e}", remote=endpoint) from e

    def open_password(self, endpoint: Endpoint, password: str, known_hosts: Path) -> RemoteSession:
        """Bootstrap session: password / keyboard-interactive only."""
        client = self._client(known_hosts)
        self._connect(client, endpoint, password=password, pkey=None, key_filename=None)
        return ParamikoSession(client, endpoint, self.ssh.command_timeout)

    def open_key(self, endpoint: Endpoint, private_key: Path, known_hosts: Path) -> RemoteSession:
        """Verification session: the given private key only."""
        if not private_key.is_file():
            raise KeyMissing("private key not found", path=private_key)
        try:
            pkey = paramiko.Ed25519Key.from_private_key_file(str(private_key))
        except (paramiko.SSHException, OSError) as e:
            raise KeyMissing(f"private key unreadable: {e}", path=private_key) from e
        client = self._client(known_hosts)
        self._connect(client, endpoint, pkey=pkey, password=None)
        return ParamikoSession(client, endpoint, self.ssh.command_timeout)
