"""Abstract process supervisor interface."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from keytunnel.config.schema import RestartPolicy


class ProcessSupervisor(ABC):
    """Abstract interface for running named units outside the caller's session.

    Implementations can support different supervision technologies:
    - systemd (production hosts)
    - Local detached processes (development/testing)
    """

    restarts_units = False
    """Whether installed units are restarted by the supervisor itself."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this supervisor can be used on this host.

        Returns:
            True if the supervisor's control commands are accessible
        """
        pass

    @abstractmethod
    def start(
        self,
        unit: str,
        argv: list[str],
        env: dict[str, str],
        log_sink: Optional[Path] = None,
    ) -> None:
        """Start a one-off unit running ``argv`` detached from the caller.

        Args:
            unit: Stable unit name
            argv: Program and arguments
            env: Complete environment for the program (nothing is inherited)
            log_sink: File that collects stdout and stderr (optional)
        """
        pass

    @abstractmethod
    def stop(self, unit: str) -> None:
        """Stop a unit and clear its failure state. No error if absent."""
        pass

    @abstractmethod
    def restart(self, unit: str) -> None:
        """Restart (or start) an installed unit."""
        pass

    @abstractmethod
    def is_active(self, unit: str) -> bool:
        pass

    @abstractmethod
    def logs(self, unit: str, lines: int = 40) -> str:
        """Return the last ``lines`` lines of the unit's output."""
        pass

    def check_privileges(self) -> None:
        """Raise NotPrivileged if this process cannot install long-running units."""
        pass

    @abstractmethod
    def install_service(
        self,
        unit: str,
        argv: list[str],
        description: str,
        restart: RestartPolicy,
    ) -> Optional[Path]:
        """Install a long-running unit with an always-restart policy.

        Args:
            unit: Stable unit name
            argv: Program and arguments
            description: Human readable description
            restart: Restart delay and start-rate cap

        Returns:
            Path of the written unit definition, if any
        """
        pass

    def status(self, unit: str, lines: int = 18) -> str:
        """Short human readable state of ``unit``."""
        return f"{unit}: {'active' if self.is_active(unit) else 'inactive'}"

    def replace(
        self,
        unit: str,
        argv: list[str],
        env: dict[str, str],
        log_sink: Optional[Path] = None,
    ) -> None:
        """Stop any existing instance of ``unit`` and start a new one."""
        self.stop(unit)
        self.start(unit, argv, env, log_sink)
