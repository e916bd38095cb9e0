"""Local supervisor for development and testing."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional, Union

from keytunnel.config.loader import atomic_write
from keytunnel.config.schema import RestartPolicy
from keytunnel.errors import SupervisorError
from keytunnel.supervisor.base import ProcessSupervisor

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        # Reap our own exited children so they do not linger as zombies
        done, _ = os.waitpid(pid, os.WNOHANG)
        return done == 0
    except ChildProcessError:
        return True


class LocalSupervisor(ProcessSupervisor):
    """Local development supervisor.

    Runs each unit as a process in its own session, so it survives the
    caller exiting, and tracks it with a pid file plus a JSON spec under
    ``state_dir``. It does not restart failed units; the tunnel runner's
    own restart loop covers that when no real supervisor is present.
    """

    def __init__(self, state_dir: Union[str, Path], stop_timeout: float = 5.0):
        self.state_dir = Path(state_dir)
        self.stop_timeout = stop_timeout

    def is_available(self) -> bool:
        """Always available for local development."""
        return True

    def _pid_file(self, unit: str) -> Path:
        return self.state_dir / f"{unit}.pid"

    def _spec_file(self, unit: str) -> Path:
        return self.state_dir / f"{unit}.json"

    def _pid(self, unit: str) -> Optional[int]:
        path = self._pid_file(unit)
        if not path.exists():
            return None
        try:
            return int(path.read_text().strip())
        except ValueError:
            return None

    def _save_spec(self, unit: str, argv: list[str], log_sink: Optional[Path]) -> None:
        # environment values are never written here; they may hold credentials
        spec = {"argv": argv, "log_sink": str(log_sink) if log_sink else None}
        atomic_write(self._spec_file(unit), json.dumps(spec, indent=2))

    def start(
        self,
        unit: str,
        argv: list[str],
        env: dict[str, str],
        log_sink: Optional[Path] = None,
    ) -> None:
        """Run ``argv`` as a detached local process.

        ``env`` reaches the process through its environment only.

        Raises:
            SupervisorError: The state directory, log sink or process
                could not be created.
        """
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._save_spec(unit, argv, log_sink)
            if log_sink is None:
                log_sink = self.state_dir / f"{unit}.log"
            log_sink.parent.mkdir(parents=True, exist_ok=True)

            with open(log_sink, "ab") as out:
                proc = subprocess.Popen(
                    argv,
                    env={"PATH": DEFAULT_PATH, **env},
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            self._pid_file(unit).write_text(str(proc.pid))
        except OSError as e:
            raise SupervisorError(f"cannot start {unit}: {e}", state_dir=self.state_dir) from e

    def stop(self, unit: str) -> None:
        """Terminate the unit's process group."""
        pid_file = self._pid_file(unit)
        if not pid_file.exists():
            return
        pid = self._pid(unit)
        pid_file.unlink()
        if pid is None or not pid_alive(pid):
            return
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            if not pid_alive(pid):
                return
            time.sleep(0.05)
        try:
            os.killpg(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def restart(self, unit: str) -> None:
        """Relaunch from the saved spec. One-off environment is not replayed."""
        with open(self._spec_file(unit)) as f:
            spec = json.load(f)
        log_sink = Path(spec["log_sink"]) if spec.get("log_sink") else None
        self.replace(unit, spec["argv"], {}, log_sink)

    def is_active(self, unit: str) -> bool:
        pid = self._pid(unit)
        return pid is not None and pid_alive(pid)

    def logs(self, unit: str, lines: int = 40) -> str:
        spec_file = self._spec_file(unit)
        log_sink = self.state_dir / f"{unit}.log"
        if spec_file.exists():
            with open(spec_file) as f:
                log_sink = Path(json.load(f).get("log_sink") or log_sink)
        if not log_sink.exists():
            return ""
        return "\n".join(log_sink.read_text(errors="replace").splitlines()[-lines:])

    def install_service(
        self,
        unit: str,
        argv: list[str],
        description: str,
        restart: RestartPolicy,
    ) -> Optional[Path]:
        """Record the unit so restart() can launch it; nothing is started."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._save_spec(unit, argv, None)
        return self._spec_file(unit)
