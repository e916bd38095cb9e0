"""Remote command sessions (bootstrap and key-only)."""

from keytunnel.remote.session import (
    AUTHORIZED_KEYS,
    CommandResult,
    ParamikoSession,
    RemoteSession,
    SSHConnector,
    append_line_command,
    ensure_authorized_keys_command,
    remote_path,
)

__all__ = [
    "AUTHORIZED_KEYS",
    "CommandResult",
    "ParamikoSession",
    "RemoteSession",
    "SSHConnector",
    "append_line_command",
    "ensure_authorized_keys_command",
    "remote_path",
]
