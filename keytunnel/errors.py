"""Error taxonomy for keytunnel.

Every error carries a reason code, the artifact it concerns (identity,
service, path) and the process exit code the CLI reports for it.
"""

from __future__ import annotations

from typing import Any


class KeyTunnelError(Exception):
    """Base class for all keytunnel failures."""

    reason = "KeyTunnelError"
    exit_code = 1
    retryable = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return f"{self.reason}: {self.message}"
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.reason}: {self.message} ({details})"


# --- provisioning -----------------------------------------------------------

class ProvisionError(KeyTunnelError):
    reason = "ProvisionError"


class MissingCredential(ProvisionError):
    """No password supplied for a non-interactive run."""
    reason = "MissingCredential"
    exit_code = 2


class InvalidIdentity(ProvisionError):
    reason = "InvalidIdentity"
    exit_code = 2


class UnreachableRemote(ProvisionError):
    """TCP connect, handshake or password authentication failed."""
    reason = "UnreachableRemote"
    exit_code = 10
    retryable = True


class VerificationFailed(ProvisionError):
    """Key was installed but key-only login did not echo the sentinel."""
    reason = "VerificationFailed"
    exit_code = 11


class RemoteCommandFailed(ProvisionError):
    """A bootstrap command ran but exited non-zero."""
    reason = "RemoteCommandFailed"
    exit_code = 13


class ProvisionCancelled(ProvisionError):
    reason = "Cancelled"
    exit_code = 12


# --- tunnel -----------------------------------------------------------------

class TunnelError(KeyTunnelError):
    reason = "TunnelError"


class PortInUse(TunnelError):
    reason = "PortInUse"
    exit_code = 20


class BindFailed(TunnelError):
    reason = "BindFailed"
    exit_code = 21


class Unreachable(TunnelError):
    reason = "Unreachable"
    exit_code = 22


class KeyMissing(TunnelError):
    reason = "KeyMissing"
    exit_code = 23


class TunnelDegraded(TunnelError):
    reason = "Degraded"
    exit_code = 24


class TunnelExited(TunnelError):
    reason = "TunnelExited"
    exit_code = 25


class StartLimitExceeded(TunnelError):
    reason = "StartLimitExceeded"
    exit_code = 26


# --- reconfiguration --------------------------------------------------------

class ReconfigError(KeyTunnelError):
    reason = "ReconfigError"


class ConfigNotFound(ReconfigError):
    reason = "ConfigNotFound"
    exit_code = 2


class InvalidAddress(ReconfigError):
    reason = "InvalidAddress"
    exit_code = 3


class RestartTimeout(ReconfigError):
    """The service was restarted but its bind port never came up."""
    reason = "RestartTimeout"
    exit_code = 4

    def __init__(self, message: str, logs: str = "", **context: Any):
        super().__init__(message, **context)
        self.logs = logs


# --- execution --------------------------------------------------------------

class NotPrivileged(KeyTunnelError):
    """Installing a supervised service needs root."""
    reason = "NotPrivileged"
    exit_code = 5


class SupervisorError(KeyTunnelError):
    reason = "SupervisorError"
    exit_code = 30


class MaterializeError(KeyTunnelError):
    reason = "MaterializeError"
    exit_code = 31
