"""
keytunnel - SSH key trust provisioning and self-healing tunnels.

This package provides:
- Per-identity key provisioning over a password-only bootstrap login
- Key-only login verification with an identity sentinel
- Detached execution under a process supervisor
- Supervised local port forwards with preflight checks and restarts
- Runtime endpoint reconfiguration
"""

from keytunnel.config import load_settings, Settings, TunnelConfig
from keytunnel.identity import IdentityStore
from keytunnel.provision import Provisioner
from keytunnel.tunnel import TunnelRunner, TunnelService
from keytunnel.reconfig import set_endpoint

__version__ = "0.1.0"

__all__ = [
    "load_settings",
    "Settings",
    "TunnelConfig",
    "IdentityStore",
    "Provisioner",
    "TunnelRunner",
    "TunnelService",
    "set_endpoint",
    "__version__",
]
