"""Configuration system for keytunnel."""

from keytunnel.config.schema import (
    Settings,
    RetryConfig,
    SSHConfig,
    Endpoint,
    HostPort,
    KeepaliveConfig,
    RestartPolicy,
    TunnelConfig,
)
from keytunnel.config.loader import (
    ConfigStore,
    atomic_write,
    load_settings,
    load_settings_or_default,
    resolve_settings_path,
)

__all__ = [
    "Settings",
    "RetryConfig",
    "SSHConfig",
    "Endpoint",
    "HostPort",
    "KeepaliveConfig",
    "RestartPolicy",
    "TunnelConfig",
    "ConfigStore",
    "atomic_write",
    "load_settings",
    "load_settings_or_default",
    "resolve_settings_path",
]
