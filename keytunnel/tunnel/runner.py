"""Supervised forwarding session: preflight, connect, watch, restart."""

from __future__ import annotations

import subprocess
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional

from keytunnel.config.schema import TunnelConfig
from keytunnel.errors import (
    KeyMissing,
    KeyTunnelError,
    StartLimitExceeded,
    TunnelDegraded,
    TunnelExited,
)
from keytunnel.identity import Identity, IdentityStore
from keytunnel.provision import verify_key_login
from keytunnel.remote import SSHConnector
from keytunnel.tunnel.net import ensure_port_free, ensure_reachable, is_listening
from keytunnel.tunnel.ssh import ForwardCommand


class TunnelState(str, Enum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    DEGRADED = "degraded"
    FAILED = "failed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class TunnelRunner:
    """Run one tunnel from its persisted record.

    ``run_once`` performs a single start attempt and raises on any
    failure, which is what a supervisor with a restart policy wants:
    the process exits non-zero and is started again after the delay.
    ``run_forever`` applies the same policy in-process for hosts without
    a supervisor.

    Usage:
        runner = TunnelRunner(config, IdentityStore("/root/.ssh"))
        signal.signal(signal.SIGTERM, lambda *_: runner.stop())
        runner.run_once()
    """

    def __init__(
        self,
        config: TunnelConfig,
        store: IdentityStore,
        connector: Optional[SSHConnector] = None,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        listening: Callable[[str, int], bool] = is_listening,
        clock: Callable[[], float] = time.monotonic,
        ssh_binary: str = "ssh",
        stop_grace: float = 5.0,
    ):
        self.config = config
        self.store = store
        self.connector = connector or SSHConnector()
        self.spawn = spawn
        self.listening = listening
        self.clock = clock
        self.ssh_binary = ssh_binary
        self.stop_grace = stop_grace

        self.state = TunnelState.IDLE
        self.history: list[TunnelState] = [TunnelState.IDLE]
        self.last_error: Optional[KeyTunnelError] = None
        self.proc: Optional[subprocess.Popen] = None
        self._stop = threading.Event()

    @property
    def name(self) -> str:
        return self.config.service_name

    def _set(self, state: TunnelState, detail: str = ""):
        suffix = f" ({detail})" if detail else ""
        print(f"[INFO] {self.name}: {self.state.value} -> {state.value}{suffix}")
        self.state = state
        self.history.append(state)

    def _fail(self, error: KeyTunnelError, state: TunnelState = TunnelState.FAILED):
        error.context.setdefault("service", self.name)
        self.last_error = error
        self._set(state, error.reason)

    def stop(self):
        """Request an operator stop; the running attempt winds down.

        Safe to call from a signal handler: it only sets an event that
        every wait in the runner observes.
        """
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def preflight(self) -> Identity:
        """Check bind port, key file, TCP reachability and key login, in that order."""
        cfg = self.config
        ensure_port_free(cfg.bind.host, cfg.bind.port)

        identity = self.store.get(cfg.identity)
        if not identity.private_key.is_file():
            raise KeyMissing("identity key not found", identity=identity.name, path=identity.private_key)
        self.store.ensure_known_hosts(identity.name)

        ensure_reachable(cfg.via.host, cfg.via.port, timeout=cfg.keepalive.connect_timeout)
        verify_key_login(self.connector, identity, cfg.via)
        return identity

    def connect(self, identity: Identity) -> subprocess.Popen:
        """Spawn ssh and wait until the local listener accepts connections."""
        cfg = self.config
        cmd = ForwardCommand(cfg, identity, ssh_binary=self.ssh_binary).build()
        print(f"[SSH] Opening tunnel: {cfg.describe()}")
        print(f"[CMD] {' '.join(cmd)}")
        proc = self.spawn(cmd, stdin=subprocess.DEVNULL)
        self.proc = proc

        probe_host = cfg.get_probe_host()
        deadline = self.clock() + cfg.keepalive.establish_timeout
        while not self._stop.is_set():
            rc = proc.poll()
            if rc is not None:
                raise TunnelExited("ssh exited before the listener came up", exit_status=rc)
            if self.listening(probe_host, cfg.bind.port):
                return proc
            if self.clock() >= deadline:
                self._terminate(proc)
                raise TunnelDegraded(
                    f"listener not up after {cfg.keepalive.establish_timeout:g}s", bind=str(cfg.bind),
                )
            self._stop.wait(0.2)
        return proc

    def watch(self, proc: subprocess.Popen) -> None:
        """Probe the established tunnel until it fails or a stop is requested."""
        ka = self.config.keepalive
        probe_host = self.config.get_probe_host()
        failures = 0
        while not self._stop.wait(ka.probe_interval):
            rc = proc.poll()
            if rc is not None:
                raise TunnelExited("ssh exited", exit_status=rc)
            if self.listening(probe_host, self.config.bind.port):
                failures = 0
                continue
            failures += 1
            print(f"[WARN] {self.name}: liveness probe failed ({failures}/{ka.probe_failures})")
            if failures >= ka.probe_failures:
                self._terminate(proc)
                raise TunnelDegraded(
                    f"{failures} consecutive probe failures", bind=str(self.config.bind),
                )

    def run_once(self) -> None:
        """One start attempt. Returns only after an operator stop.

        Raises:
            KeyTunnelError: Preflight failure or a lost connection; the
                runner is left in FAILED or DEGRADED.
        """
        self._set(TunnelState.PREFLIGHT)
        try:
            identity = self.preflight()
        except KeyTunnelError as e:
            self._fail(e)
            raise

        self._set(TunnelState.CONNECTING)
        try:
            proc = self.connect(identity)
            if not self._stop.is_set():
                self._set(TunnelState.ESTABLISHED)
                self.watch(proc)
        except TunnelDegraded as e:
            self._fail(e, TunnelState.DEGRADED)
            raise
        except KeyTunnelError as e:
            if self.proc is not None:
                self._terminate(self.proc)
            self._fail(e)
            raise

        if self.proc is not None:
            self._terminate(self.proc)
        self._set(TunnelState.STOPPED)

    def run_forever(self) -> None:
        """Restart on every failure with a fixed delay, capped per window.

        Raises:
            StartLimitExceeded: More than ``restart.burst`` starts within
                ``restart.interval`` seconds.
        """
        policy = self.config.restart
        starts: deque[float] = deque()
        while not self._stop.is_set():
            now = self.clock()
            while starts and now - starts[0] >= policy.interval:
                starts.popleft()
            if len(starts) >= policy.burst:
                error = StartLimitExceeded(
                    f"{len(starts)} starts within {policy.interval}s", service=self.name,
                )
                self._fail(error)
                raise error
            starts.append(now)

            try:
                self.run_once()
                return
            except KeyTunnelError as e:
                if self._stop.is_set():
                    break
                print(f"[WARN] {e}")
                self._set(TunnelState.RESTARTING, f"in {policy.delay:g}s")
                self._stop.wait(policy.delay)
        if self.state != TunnelState.STOPPED:
            self._set(TunnelState.STOPPED)

    def _terminate(self, proc: subprocess.Popen):
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_grace)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
