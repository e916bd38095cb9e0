"""Run work detached from the invoking session.

A program that should outlive an SSH login is handed to a process
supervisor. If it arrived as a stream (``curl ... | python3 -``) there
is no file the supervisor could execute, so it is first written to a
stable location.
"""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Optional, Union

from keytunnel.config.loader import atomic_write
from keytunnel.errors import MaterializeError, SupervisorError
from keytunnel.supervisor import ENV_FILE_VAR, ProcessSupervisor

DETACHED_ENV = "KEYTUNNEL_DETACHED"

TRANSIENT_PREFIXES = ("/dev/fd/", "/proc/self/fd/", "/dev/stdin")


def is_detached() -> bool:
    """True inside a run that was already handed to a supervisor."""
    return os.environ.get(DETACHED_ENV) == "1"


def consume_env_file() -> None:
    """Delete the handoff env file once its values are in our environment."""
    path = os.environ.get(ENV_FILE_VAR)
    if path:
        Path(path).unlink(missing_ok=True)


@dataclass(frozen=True)
class ProgramImage:
    """The program to relaunch, passed explicitly rather than sniffed.

    Exactly one of ``module``, ``path`` or ``source`` describes the code:
    an importable module, a file on disk, or bytes that arrived on a pipe.
    """

    args: tuple[str, ...] = ()
    module: Optional[str] = None
    path: Optional[Path] = None
    source: Optional[bytes] = None
    interpreter: str = field(default_factory=lambda: sys.executable)

    @classmethod
    def for_module(cls, module: str, args: list[str]) -> "ProgramImage":
        return cls(args=tuple(args), module=module)

    @classmethod
    def from_file(cls, path: Union[str, Path], args: list[str]) -> "ProgramImage":
        return cls(args=tuple(args), path=Path(path))

    @classmethod
    def from_stream(cls, stream: BinaryIO, args: list[str]) -> "ProgramImage":
        """Read the rest of a piped program so it can be materialized."""
        return cls(args=tuple(args), source=stream.read())

    def is_stable(self) -> bool:
        if self.module:
            return True
        if self.path is None:
            return False
        text = str(self.path)
        if text in ("-", "") or text.startswith(TRANSIENT_PREFIXES):
            return False
        return self.path.is_file()

    def argv(self) -> list[str]:
        if self.module:
            return [self.interpreter, "-m", self.module, *self.args]
        if self.path is None:
            raise MaterializeError("program has no on-disk location")
        return [self.interpreter, str(self.path), *self.args]


@dataclass
class Handle:
    """Result of a detached run request."""

    unit: str
    detached: bool
    log_path: Optional[Path] = None
    returncode: Optional[int] = None


class DetachedExecutionManager:
    """Materialize a program and relaunch it under a supervisor.

    Usage:
        manager = DetachedExecutionManager(supervisor, bin_dir="/usr/local/bin")
        handle = manager.run_detached(image, {"KEYTUNNEL_PASSWORD": pw}, log, unit)
        if handle.detached:
            print(f"tail -f {handle.log_path}")
    """

    def __init__(self, supervisor: ProcessSupervisor, bin_dir: Union[str, Path]):
        self.supervisor = supervisor
        self.bin_dir = Path(bin_dir)

    def materialize(self, image: ProgramImage, unit: str) -> ProgramImage:
        """Return an image the supervisor can execute from disk.

        Raises:
            MaterializeError: The image is transient and carries no source.
        """
        if image.is_stable():
            return image
        if image.source is None:
            raise MaterializeError("transient program with no source to save", unit=unit, path=image.path)
        dest = self.bin_dir / f"{unit}.py"
        atomic_write(dest, image.source, mode=0o700)
        print(f"[INFO] Saved program to {dest}")
        return replace(image, path=dest, source=None)

    def run_detached(
        self,
        image: ProgramImage,
        env: dict[str, str],
        log_sink: Optional[Path],
        unit: str,
    ) -> Handle:
        """Hand ``image`` to the supervisor under ``unit``.

        Any existing unit with that name is stopped and cleared first.
        If the supervisor is unavailable or refuses the handoff, the
        program runs in the foreground instead and its exit code is
        returned in the handle.
        """
        image = self.materialize(image, unit)
        argv = image.argv()
        child_env = {**env, DETACHED_ENV: "1"}

        if self.supervisor.is_available():
            try:
                self.supervisor.replace(unit, argv, child_env, log_sink)
                print(f"[INFO] Running in background as {unit}")
                if log_sink is not None:
                    print(f"[INFO] Follow logs: tail -f {log_sink}")
                return Handle(unit=unit, detached=True, log_path=log_sink)
            except (SupervisorError, OSError) as e:
                print(f"[WARN] Supervisor handoff failed: {e}")
        else:
            print("[WARN] No process supervisor available")

        print("[WARN] Continuing in the foreground")
        return self._run_foreground(unit, argv, child_env)

    def _run_foreground(self, unit: str, argv: list[str], env: dict[str, str]) -> Handle:
        result = subprocess.run(argv, env={**os.environ, **env}, check=False)
        return Handle(unit=unit, detached=False, returncode=result.returncode)
