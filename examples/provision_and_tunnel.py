#!/usr/bin/env python3
"""
Provision an identity key, then run a tunnel over it.

Usage:
    KEYTUNNEL_PASSWORD=... python examples/provision_and_tunnel.py 203.0.113.9 2222
"""

import os
import sys

from keytunnel import IdentityStore, Provisioner, TunnelService
from keytunnel.config import ConfigStore, Endpoint, HostPort, TunnelConfig, load_settings_or_default
from keytunnel.remote import SSHConnector
from keytunnel.supervisor import default_supervisor


def main(host: str, port: int):
    settings = load_settings_or_default()
    store = IdentityStore(settings.ssh_dir)

    print("=" * 60)
    print("Installing key for identity edge-01...")
    print("=" * 60)
    remote = Endpoint(host=host, port=port)
    provisioner = Provisioner(store, SSHConnector(settings.ssh))
    provisioner.provision("edge-01", remote, password=os.environ.get("KEYTUNNEL_PASSWORD", ""))

    print()
    print("=" * 60)
    print("Starting tunnel 0.0.0.0:8443 -> 127.0.0.1:443 ...")
    print("=" * 60)
    config = TunnelConfig(
        service_name="edge-tunnel",
        via=remote,
        identity="edge-01",
        bind=HostPort(host="0.0.0.0", port=8443),
        target=HostPort(host="127.0.0.1", port=443),
    )
    service = TunnelService(
        ConfigStore(settings.config_dir), default_supervisor(settings.unit_dir), settings.ssh_dir,
    )
    service.install(config)

    print()
    print("Move the tunnel later with:")
    print("  keytunnel set-endpoint edge-tunnel NEW_HOST")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    main(sys.argv[1], int(sys.argv[2]) if len(sys.argv) > 2 else 22)
