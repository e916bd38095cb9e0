"""Supervised SSH tunnels."""

from keytunnel.tunnel.ssh import ForwardCommand, kill_tunnel
from keytunnel.tunnel.net import ensure_port_free, ensure_reachable, is_listening
from keytunnel.tunnel.runner import TunnelRunner, TunnelState
from keytunnel.tunnel.service import TunnelService

__all__ = [
    "ForwardCommand",
    "kill_tunnel",
    "ensure_port_free",
    "ensure_reachable",
    "is_listening",
    "TunnelRunner",
    "TunnelState",
    "TunnelService",
]
