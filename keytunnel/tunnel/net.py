"""Local socket checks used by preflight and liveness probes."""

from __future__ import annotations

import errno
import socket

from keytunnel.errors import BindFailed, PortInUse, Unreachable


def _family(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _probe_host(host: str) -> str:
    if host in ("", "*", "0.0.0.0"):
        return "127.0.0.1"
    if host == "::":
        return "::1"
    return host


def ensure_port_free(host: str, port: int) -> None:
    """Fail unless ``host:port`` could be bound by a new listener.

    SO_REUSEADDR lets the bind succeed over sockets still in TIME_WAIT,
    as ssh's own listener will. On BSD and macOS it also lets the bind
    succeed over a live listener, so a successful bind is followed by a
    connect check.

    Raises:
        PortInUse: Another socket already listens there.
        BindFailed: Binding failed for another reason (e.g. permission).
    """
    s = socket.socket(_family(host), socket.SOCK_STREAM)
    try:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, port))
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            raise PortInUse("bind address already in use", bind=f"{host}:{port}") from e
        raise BindFailed(f"cannot bind: {e.strerror or e}", bind=f"{host}:{port}") from e
    finally:
        s.close()
    if is_listening(_probe_host(host), port, timeout=0.5):
        raise PortInUse("another listener accepts connections", bind=f"{host}:{port}")


def is_listening(host: str, port: int, timeout: float = 1.0) -> bool:
    """True if something accepts TCP connections on ``host:port``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def ensure_reachable(host: str, port: int, timeout: float) -> None:
    """Open and close a TCP connection to ``host:port``.

    Raises:
        Unreachable: Connect failed or timed out.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return
    except OSError as e:
        raise Unreachable(f"tcp connect failed: {e}", via=f"{host}:{port}") from e
