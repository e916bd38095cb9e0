import socket
import subprocess
from pathlib import Path
from typing import Optional

import pytest

from keytunnel.config import Endpoint, HostPort, TunnelConfig
from keytunnel.errors import SupervisorError, UnreachableRemote
from keytunnel.identity import IdentityStore
from keytunnel.remote import CommandResult, RemoteSession
from keytunnel.supervisor import ProcessSupervisor


class LocalShellSession(RemoteSession):
    """Runs the real remote shell commands with bash against a fake HOME."""

    def __init__(self, home: Path, endpoint: Endpoint):
        self.home = home
        self.endpoint = endpoint
        self.commands: list[str] = []

    def run(self, command, timeout=None):
        self.commands.append(command)
        proc = subprocess.run(
            ["bash", "-c", command],
            env={"HOME": str(self.home), "PATH": "/usr/bin:/bin"},
            capture_output=True,
            text=True,
            timeout=timeout or 10,
        )
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)


class FakeRemote:
    """A remote account: bash against a temp HOME, key auth by file lookup."""

    def __init__(self, home: Path, key_auth_enabled: bool = True, fail_connects: int = 0,
                 echo_override: Optional[str] = None):
        self.home = home
        self.key_auth_enabled = key_auth_enabled
        self.fail_connects = fail_connects
        self.echo_override = echo_override
        self.password_opens = 0
        self.key_opens = 0

    @property
    def authorized_keys(self) -> Path:
        return self.home / ".ssh" / "authorized_keys"

    def lines(self) -> list[str]:
        if not self.authorized_keys.exists():
            return []
        return self.authorized_keys.read_text().splitlines()

    def open_password(self, endpoint, password, known_hosts):
        self.password_opens += 1
        if self.password_opens <= self.fail_connects:
            raise UnreachableRemote("connect failed: timed out", remote=endpoint)
        return LocalShellSession(self.home, endpoint)

    def open_key(self, endpoint, private_key, known_hosts):
        self.key_opens += 1
        pub = Path(str(private_key) + ".pub").read_text().strip()
        if not self.key_auth_enabled or pub not in self.lines():
            raise UnreachableRemote("authentication failed", remote=endpoint)
        session = LocalShellSession(self.home, endpoint)
        if self.echo_override is not None:
            override = self.echo_override
            session.run = lambda command, timeout=None: CommandResult(0, override + "\n")
        return session


class FakeSupervisor(ProcessSupervisor):
    """Records calls; tracks which units are running."""

    restarts_units = True

    def __init__(self, available: bool = True, fail_start: bool = False):
        self.available = available
        self.fail_start = fail_start
        self.calls: list[tuple] = []
        self.running: dict[str, list] = {}
        self.installed: dict[str, list] = {}
        self.log_text = "ssh: connect to host 203.0.113.9 port 22: Connection refused"

    def is_available(self):
        return self.available

    def start(self, unit, argv, env, log_sink=None):
        self.calls.append(("start", unit, list(argv), dict(env), log_sink))
        if self.fail_start:
            raise SupervisorError("systemd-run failed")
        self.running.setdefault(unit, []).append(argv)

    def stop(self, unit):
        self.calls.append(("stop", unit))
        self.running.pop(unit, None)

    def restart(self, unit):
        self.calls.append(("restart", unit))
        self.running[unit] = [self.installed.get(unit)]

    def is_active(self, unit):
        return bool(self.running.get(unit))

    def logs(self, unit, lines=40):
        return self.log_text

    def install_service(self, unit, argv, description, restart):
        self.calls.append(("install_service", unit, list(argv), description))
        self.installed[unit] = argv
        return None


class FakeProc:
    def __init__(self, exit_after_polls: Optional[int] = None, code: int = 255):
        self.returncode = None
        self.exit_after_polls = exit_after_polls
        self.code = code
        self.polls = 0
        self.terminated = False
        self.killed = False
        self.argv = None

    def poll(self):
        self.polls += 1
        if self.returncode is None and self.exit_after_polls is not None and self.polls > self.exit_after_polls:
            self.returncode = self.code
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


@pytest.fixture
def store(tmp_path):
    return IdentityStore(tmp_path / "ssh")


@pytest.fixture
def remote_home(tmp_path):
    home = tmp_path / "remote-home"
    home.mkdir()
    return home


@pytest.fixture
def listener():
    """A TCP listener on an ephemeral port, standing in for a reachable sshd."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind(("127.0.0.1", 0))
    s.listen(8)
    yield s
    s.close()


def free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def make_config(service="svc1", via_host="127.0.0.1", via_port=22, bind_host="127.0.0.1",
                bind_port=18443, identity="edge-01", **overrides) -> TunnelConfig:
    data = dict(
        service_name=service,
        via=Endpoint(host=via_host, port=via_port),
        identity=identity,
        bind=HostPort(host=bind_host, port=bind_port),
        target=HostPort(host="203.0.113.9", port=443),
    )
    data.update(overrides)
    return TunnelConfig(**data)
