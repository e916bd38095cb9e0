"""Process supervision for detached and long-running units."""

from keytunnel.supervisor.base import ProcessSupervisor
from keytunnel.supervisor.systemd import SystemdSupervisor, render_unit, ENV_FILE_VAR
from keytunnel.supervisor.local import LocalSupervisor


def default_supervisor(unit_dir: str = "/etc/systemd/system") -> ProcessSupervisor:
    """systemd when the host runs it, otherwise local detached processes."""
    systemd = SystemdSupervisor(unit_dir=unit_dir)
    if systemd.is_available():
        return systemd
    return LocalSupervisor("/run/keytunnel/local")


__all__ = [
    "ProcessSupervisor",
    "SystemdSupervisor",
    "LocalSupervisor",
    "render_unit",
    "default_supervisor",
    "ENV_FILE_VAR",
]
