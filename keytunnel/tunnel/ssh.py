"""ssh command construction for supervised port forwards."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field

from keytunnel.config.schema import TunnelConfig
from keytunnel.identity import Identity


def kill_tunnel(port: int) -> bool:
    """Kill stray ssh forwarders bound to local ``port``.

    Returns:
        True if a matching process was signalled.
    """
    pattern = f"ssh .*-L ([^ ]+:)?{port}:"
    try:
        result = subprocess.run(["pkill", "-f", pattern], check=False, capture_output=True)
    except OSError as e:
        print(f"[WARN] pkill unavailable, forwarders on {port} left running: {e}")
        return False
    if result.returncode == 0:
        print(f"[INFO] Killed stray forwarder(s) on port {port}")
    return result.returncode == 0


@dataclass
class ForwardCommand:
    """Build the ssh command for one local port forward.

    Authentication is restricted to the identity's key, and the process
    exits if the forward cannot be set up or the server stops answering
    keepalives, so the supervisor can restart it promptly.
    """

    config: TunnelConfig
    identity: Identity
    ssh_binary: str = "ssh"

    auth_options: list[str] = field(
        default_factory=lambda: [
            "-o", "PreferredAuthentications=publickey",
            "-o", "PubkeyAuthentication=yes",
            "-o", "PasswordAuthentication=no",
            "-o", "KbdInteractiveAuthentication=no",
            "-o", "IdentitiesOnly=yes",
            "-o", "BatchMode=yes",
        ]
    )

    def ssh_options(self) -> list[str]:
        ka = self.config.keepalive
        return [
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"UserKnownHostsFile={self.identity.known_hosts}",
            *self.auth_options,
            "-o", "ExitOnForwardFailure=yes",
            "-o", f"ServerAliveInterval={ka.interval}",
            "-o", f"ServerAliveCountMax={ka.count_max}",
            "-o", "TCPKeepAlive=yes",
            "-o", f"ConnectTimeout={ka.connect_timeout}",
            "-o", f"ConnectionAttempts={ka.connection_attempts}",
        ]

    def forward_spec(self) -> str:
        bind, target = self.config.bind, self.config.target
        return f"{bind.host}:{bind.port}:{target.host}:{target.port}"

    def build(self) -> list[str]:
        via = self.config.via
        return [
            self.ssh_binary,
            "-N",
            "-p", str(via.port),
            "-i", str(self.identity.private_key),
            *self.ssh_options(),
            "-L", self.forward_spec(),
            f"{via.user}@{via.host}",
        ]
