"""systemd process supervisor implementation."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from contextlib import suppress
from pathlib import Path
from typing import Optional, Union

from keytunnel.config.loader import atomic_write
from keytunnel.config.schema import RestartPolicy
from keytunnel.errors import NotPrivileged, SupervisorError
from keytunnel.supervisor.base import ProcessSupervisor

ENV_FILE_VAR = "KEYTUNNEL_ENV_FILE"


def command_available(cmd: str) -> bool:
    """Check if a command is available in PATH."""
    return shutil.which(cmd) is not None


def run(cmd: list[str], check: bool = True) -> subprocess.CompletedProcess:
    """Run a control command and capture its output."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise SupervisorError(f"cannot run {cmd[0]}: {e}") from e
    if check and result.returncode != 0:
        raise SupervisorError(
            f"{shlex.join(cmd)} exited {result.returncode}: {result.stderr.strip()}",
        )
    return result


def service_name(unit: str) -> str:
    return unit if unit.endswith(".service") else f"{unit}.service"


def quote_env_value(value: str) -> str:
    """Quote a value for a systemd EnvironmentFile line."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_env_file(env: dict[str, str]) -> str:
    return "".join(f"{k}={quote_env_value(v)}\n" for k, v in sorted(env.items()))


def render_unit(
    argv: list[str],
    description: str,
    restart: RestartPolicy,
) -> str:
    """Render a unit file with an always-restart policy and start-rate cap."""
    exec_start = " ".join(shlex.quote(a) for a in argv)
    return f"""[Unit]
Description={description}
After=network-online.target
Wants=network-online.target
StartLimitIntervalSec={restart.interval}
StartLimitBurst={restart.burst}

[Service]
Type=simple
User=root
ExecStart={exec_start}
Restart=always
RestartSec={restart.delay:g}
KillMode=control-group

[Install]
WantedBy=multi-user.target
"""


class SystemdSupervisor(ProcessSupervisor):
    """Supervise units with systemd.

    One-off work runs as a transient unit (``systemd-run --collect``),
    long-running tunnels as installed units under ``unit_dir``.
    Environment is handed over in a 0600 env file, never on a command line.
    """

    restarts_units = True

    def __init__(
        self,
        unit_dir: Union[str, Path] = "/etc/systemd/system",
        env_dir: Union[str, Path] = "/run/keytunnel",
    ):
        self.unit_dir = Path(unit_dir)
        self.env_dir = Path(env_dir)

    def is_available(self) -> bool:
        if not (command_available("systemctl") and command_available("systemd-run")):
            return False
        return Path("/run/systemd/system").is_dir()

    def env_file(self, unit: str) -> Path:
        return self.env_dir / f"{unit}.env"

    def start(
        self,
        unit: str,
        argv: list[str],
        env: dict[str, str],
        log_sink: Optional[Path] = None,
    ) -> None:
        env_file = self.env_file(unit)
        try:
            atomic_write(env_file, render_env_file({**env, ENV_FILE_VAR: str(env_file)}))
            if log_sink is not None:
                log_sink.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            with suppress(OSError):
                env_file.unlink()
            raise SupervisorError(f"cannot prepare {unit}: {e}", env_file=env_file) from e

        cmd = [
            "systemd-run",
            f"--unit={unit}",
            "--collect",
            "--quiet",
            "-p", f"EnvironmentFile={env_file}",
        ]
        if log_sink is not None:
            cmd += [
                "-p", f"StandardOutput=append:{log_sink}",
                "-p", f"StandardError=append:{log_sink}",
            ]
        cmd += ["--", *argv]
        print(f"[CMD] {shlex.join(cmd)}")
        try:
            run(cmd)
        except SupervisorError:
            # nothing will consume the env file now
            env_file.unlink(missing_ok=True)
            raise

    def stop(self, unit: str) -> None:
        name = service_name(unit)
        run(["systemctl", "stop", name], check=False)
        run(["systemctl", "reset-failed", name], check=False)

    def restart(self, unit: str) -> None:
        run(["systemctl", "daemon-reload"])
        run(["systemctl", "restart", service_name(unit)])

    def is_active(self, unit: str) -> bool:
        return run(["systemctl", "is-active", "--quiet", service_name(unit)], check=False).returncode == 0

    def logs(self, unit: str, lines: int = 40) -> str:
        result = run(
            ["journalctl", "-u", service_name(unit), "-n", str(lines), "--no-pager"],
            check=False,
        )
        return result.stdout

    def status(self, unit: str, lines: int = 18) -> str:
        result = run(["systemctl", "--no-pager", "--full", "status", service_name(unit)], check=False)
        return "\n".join(result.stdout.splitlines()[:lines])

    def check_privileges(self) -> None:
        """Unit files and systemctl enable need root."""
        if os.geteuid() != 0:
            raise NotPrivileged("installing systemd units requires root", unit_dir=self.unit_dir)

    def install_service(
        self,
        unit: str,
        argv: list[str],
        description: str,
        restart: RestartPolicy,
    ) -> Optional[Path]:
        path = self.unit_dir / service_name(unit)
        atomic_write(path, render_unit(argv, description, restart), mode=0o644)
        run(["systemctl", "daemon-reload"])
        run(["systemctl", "enable", service_name(unit)])
        print(f"[INFO] Wrote unit -> {path}")
        return path
