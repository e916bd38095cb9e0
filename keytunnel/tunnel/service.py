"""Install, replace and inspect supervised tunnel services."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional, Union

from keytunnel.config.loader import ConfigStore
from keytunnel.config.schema import TunnelConfig
from keytunnel.retry import BackoffPolicy
from keytunnel.supervisor import ProcessSupervisor
from keytunnel.tunnel.net import is_listening
from keytunnel.tunnel.ssh import kill_tunnel


class TunnelService:
    """Manage the supervisor unit that keeps one tunnel running.

    The unit runs ``keytunnel run --service <name>``, which re-reads the
    persisted record on every start, so editing the record and
    restarting the unit is all a reconfiguration needs.
    """

    def __init__(
        self,
        configs: ConfigStore,
        supervisor: ProcessSupervisor,
        ssh_dir: Union[str, Path],
        poll: Optional[BackoffPolicy] = None,
        listening: Callable[[str, int], bool] = is_listening,
        interpreter: str = sys.executable,
        settings_path: Optional[Union[str, Path]] = None,
    ):
        self.configs = configs
        self.supervisor = supervisor
        self.ssh_dir = Path(ssh_dir)
        self.poll = poll or BackoffPolicy.fixed(10, 1.0)
        self.listening = listening
        self.interpreter = interpreter
        self.settings_path = Path(settings_path) if settings_path else None

    def unit_argv(self, service_name: str) -> list[str]:
        argv = [self.interpreter, "-m", "keytunnel.cli"]
        if self.settings_path:
            argv += ["--settings", str(self.settings_path)]
        argv += [
            "run",
            "--service", service_name,
            "--config-dir", str(self.configs.config_dir),
            "--ssh-dir", str(self.ssh_dir),
        ]
        if not self.supervisor.restarts_units:
            argv.append("--keep-alive")
        return argv

    def is_up(self, config: TunnelConfig) -> bool:
        return self.listening(config.get_probe_host(), config.bind.port)

    def wait_listening(self, config: TunnelConfig) -> bool:
        return self.poll.poll(lambda: self.is_up(config))

    def install(self, config: TunnelConfig, wait: bool = True) -> bool:
        """Persist ``config`` and (re)start its unit, replacing any running instance.

        Returns:
            True if the bind port was observed listening (always True when
            ``wait`` is False).
        """
        unit = config.service_name
        path = self.configs.save(config)
        print(f"[INFO] Wrote config -> {path}")

        self.supervisor.stop(unit)
        kill_tunnel(config.bind.port)

        self.supervisor.install_service(
            unit,
            self.unit_argv(unit),
            description=f"keytunnel {unit} ({config.describe()})",
            restart=config.restart,
        )
        self.supervisor.restart(unit)

        if not wait:
            return True
        if self.wait_listening(config):
            print(f"[INFO] Tunnel is listening on {config.bind.port}")
            return True
        print(f"[WARN] Tunnel not listening on {config.bind.port} yet")
        return False

    def stop(self, service_name: str) -> None:
        self.supervisor.stop(service_name)
        print(f"[INFO] Stopped {service_name}")

    def status(self, service_name: str) -> dict:
        config = self.configs.load(service_name)
        return {
            "service": service_name,
            "active": self.supervisor.is_active(service_name),
            "listening": self.is_up(config),
            "route": config.describe(),
            "identity": config.identity,
            "supervisor": self.supervisor.status(service_name),
        }
