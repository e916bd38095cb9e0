"""Point a running tunnel at a new SSH endpoint."""

from __future__ import annotations

import ipaddress
import re
from typing import Callable, Optional

from keytunnel.config.loader import ConfigStore
from keytunnel.config.schema import TunnelConfig
from keytunnel.errors import InvalidAddress, RestartTimeout
from keytunnel.retry import BackoffPolicy
from keytunnel.supervisor import ProcessSupervisor
from keytunnel.tunnel.net import is_listening

_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def valid_address(value: str) -> bool:
    """Accept IPv4/IPv6 literals and RFC 1123 host names.

    Dotted all-numeric strings that are not valid IPv4 (``999.1.1.1``)
    are rejected rather than treated as host names.
    """
    if not value or value != value.strip():
        return False
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        pass
    name = value[:-1] if value.endswith(".") else value
    if not name or len(name) > 253:
        return False
    labels = name.split(".")
    if not all(_LABEL.match(label) for label in labels):
        return False
    return not labels[-1].isdigit()


def set_endpoint(
    service_name: str,
    new_host: str,
    configs: ConfigStore,
    supervisor: ProcessSupervisor,
    poll: Optional[BackoffPolicy] = None,
    listening: Callable[[str, int], bool] = is_listening,
) -> TunnelConfig:
    """Replace ``via.host`` of a tunnel and restart it.

    Args:
        service_name: Tunnel service to edit
        new_host: New SSH endpoint address
        configs: Store holding the persisted records
        supervisor: Supervisor running the service unit
        poll: Attempts and interval for the listening check
        listening: Probe for the bind port

    Returns:
        The updated record

    Raises:
        InvalidAddress: ``new_host`` is malformed; nothing is written
        ConfigNotFound: No record exists for ``service_name``
        RestartTimeout: The bind port never came up after the restart
    """
    if not valid_address(new_host):
        raise InvalidAddress("not a valid IP address or host name", address=new_host, service=service_name)
    poll = poll or BackoffPolicy.fixed(10, 1.0)

    current = configs.load(service_name)
    updated = current.with_via_host(new_host)
    print(f"[INFO] Updating {service_name} endpoint: {current.via.host} -> {new_host}")
    configs.save(updated)

    print(f"[INFO] Restarting {service_name} ...")
    supervisor.restart(service_name)

    probe_host = updated.get_probe_host()
    if not poll.poll(lambda: listening(probe_host, updated.bind.port)):
        raise RestartTimeout(
            f"not listening on {updated.bind.port} after {poll.max_attempts} checks",
            logs=supervisor.logs(service_name),
            service=service_name, bind=str(updated.bind),
        )
    print(f"[INFO] Tunnel is listening on {updated.bind.port}")
    return updated
