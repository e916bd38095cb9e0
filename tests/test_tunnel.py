import signal
import socket
import subprocess

import pytest

from keytunnel import cli
from keytunnel.config import ConfigStore, KeepaliveConfig, RestartPolicy
from keytunnel.errors import (
    KeyMissing,
    PortInUse,
    StartLimitExceeded,
    TunnelDegraded,
    TunnelExited,
    Unreachable,
    VerificationFailed,
)
from keytunnel.tunnel import ForwardCommand, TunnelRunner, TunnelState, ensure_port_free, kill_tunnel

from conftest import FakeProc, FakeRemote, free_port, make_config

FAST = KeepaliveConfig(probe_interval=0.01, probe_failures=3, establish_timeout=2.0)


class Spawner:
    def __init__(self, *procs):
        self.procs = list(procs)
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        return self.procs.pop(0) if self.procs else FakeProc()


class Probe:
    """Listening probe driven by a script of answers; stops the runner when told."""

    def __init__(self, answers, runner=None, stop_after=None):
        self.answers = list(answers)
        self.runner = runner
        self.stop_after = stop_after
        self.calls = 0

    def __call__(self, host, port):
        self.calls += 1
        if self.stop_after is not None and self.calls >= self.stop_after:
            self.runner.stop()
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]


@pytest.fixture
def authorized(store, remote_home):
    """Identity edge-01 whose key the fake remote accepts."""
    identity = store.generate("edge-01")
    remote = FakeRemote(remote_home)
    (remote_home / ".ssh").mkdir()
    remote.authorized_keys.write_text(identity.public_key_line() + "\n")
    return remote


def runner_for(config, store, remote, spawn=None, listening=None):
    return TunnelRunner(
        config, store, connector=remote,
        spawn=spawn or Spawner(), listening=listening or (lambda h, p: True),
    )


def test_forward_command_is_key_only_and_fails_fast(store):
    identity = store.get("edge-01")
    config = make_config(via_host="203.0.113.9", via_port=2222, bind_host="0.0.0.0", bind_port=443)

    cmd = ForwardCommand(config, identity).build()

    assert cmd[:6] == ["ssh", "-N", "-p", "2222", "-i", str(identity.private_key)]
    assert cmd[-3:] == ["-L", "0.0.0.0:443:203.0.113.9:443", "root@203.0.113.9"]
    opts = {cmd[i + 1] for i, part in enumerate(cmd) if part == "-o"}
    assert "ExitOnForwardFailure=yes" in opts
    assert "BatchMode=yes" in opts
    assert "PasswordAuthentication=no" in opts
    assert "IdentitiesOnly=yes" in opts
    assert "ServerAliveInterval=20" in opts
    assert "ServerAliveCountMax=3" in opts
    assert "StrictHostKeyChecking=accept-new" in opts
    assert f"UserKnownHostsFile={identity.known_hosts}" in opts


@pytest.fixture
def occupied_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("0.0.0.0", 0))
    s.listen(1)
    yield s.getsockname()[1]
    s.close()


def test_port_in_use_fails_preflight_without_connecting(store, authorized, occupied_port, listener):
    spawn = Spawner()
    config = make_config(via_port=listener.getsockname()[1], bind_host="0.0.0.0", bind_port=occupied_port)
    runner = runner_for(config, store, authorized, spawn=spawn)

    with pytest.raises(PortInUse) as exc:
        runner.run_once()

    assert exc.value.context["service"] == "svc1"
    assert exc.value.exit_code == 20
    assert runner.state == TunnelState.FAILED
    assert runner.history == [TunnelState.IDLE, TunnelState.PREFLIGHT, TunnelState.FAILED]
    assert spawn.calls == []
    assert authorized.key_opens == 0


def test_ensure_port_free_on_free_port():
    ensure_port_free("127.0.0.1", free_port())


def test_ensure_port_free_rejects_listener_the_bind_let_through(monkeypatch):
    seen = []

    def accepting(host, port, timeout=1.0):
        seen.append(host)
        return True

    monkeypatch.setattr("keytunnel.tunnel.net.is_listening", accepting)
    with pytest.raises(PortInUse):
        ensure_port_free("0.0.0.0", free_port())
    assert seen == ["127.0.0.1"]


def test_missing_key(store, remote_home, listener):
    config = make_config(via_port=listener.getsockname()[1], bind_port=free_port())
    with pytest.raises(KeyMissing):
        runner_for(config, store, FakeRemote(remote_home)).run_once()


def test_unreachable_endpoint(store, authorized):
    config = make_config(via_port=free_port(), bind_port=free_port())
    with pytest.raises(Unreachable):
        runner_for(config, store, authorized).run_once()
    assert authorized.key_opens == 0


def test_key_not_accepted(store, remote_home, listener):
    store.generate("edge-01")
    config = make_config(via_port=listener.getsockname()[1], bind_port=free_port())
    with pytest.raises(VerificationFailed):
        runner_for(config, store, FakeRemote(remote_home)).run_once()


def established_config(listener, **overrides):
    overrides.setdefault("keepalive", FAST)
    return make_config(via_port=listener.getsockname()[1], bind_port=free_port(), **overrides)


def test_established_until_operator_stop(store, authorized, listener):
    proc = FakeProc()
    config = established_config(listener)
    runner = runner_for(config, store, authorized, spawn=Spawner(proc))
    runner.listening = Probe([True], runner=runner, stop_after=4)

    runner.run_once()

    assert runner.history == [
        TunnelState.IDLE, TunnelState.PREFLIGHT, TunnelState.CONNECTING,
        TunnelState.ESTABLISHED, TunnelState.STOPPED,
    ]
    assert proc.terminated


def test_failed_probes_degrade_and_tear_down(store, authorized, listener):
    proc = FakeProc()
    config = established_config(listener)
    runner = runner_for(config, store, authorized, spawn=Spawner(proc), listening=Probe([True, False]))

    with pytest.raises(TunnelDegraded) as exc:
        runner.run_once()

    assert exc.value.exit_code == 24
    assert runner.state == TunnelState.DEGRADED
    assert TunnelState.ESTABLISHED in runner.history
    assert proc.terminated


def test_listener_never_up_is_degraded(store, authorized, listener):
    proc = FakeProc()
    config = established_config(listener, keepalive=KeepaliveConfig(establish_timeout=0.05))
    runner = runner_for(config, store, authorized, spawn=Spawner(proc), listening=lambda h, p: False)

    with pytest.raises(TunnelDegraded):
        runner.run_once()
    assert TunnelState.ESTABLISHED not in runner.history
    assert proc.terminated


def test_ssh_exit_is_reported(store, authorized, listener):
    config = established_config(listener)
    runner = runner_for(config, store, authorized, spawn=Spawner(FakeProc(exit_after_polls=0, code=255)),
                        listening=lambda h, p: False)

    with pytest.raises(TunnelExited) as exc:
        runner.run_once()
    assert exc.value.context["exit_status"] == 255
    assert runner.state == TunnelState.FAILED


def test_run_forever_restarts_after_failure(store, authorized, listener):
    config = established_config(listener, restart=RestartPolicy(delay=0))
    spawn = Spawner(FakeProc(exit_after_polls=0), FakeProc())
    runner = runner_for(config, store, authorized, spawn=spawn)
    runner.listening = Probe([False, True], runner=runner, stop_after=5)

    runner.run_forever()

    assert len(spawn.calls) == 2
    assert TunnelState.RESTARTING in runner.history
    assert runner.state == TunnelState.STOPPED


def test_run_forever_caps_start_rate(store, remote_home, listener):
    config = established_config(listener, restart=RestartPolicy(delay=0, burst=3, interval=60))
    runner = runner_for(config, store, FakeRemote(remote_home))

    with pytest.raises(StartLimitExceeded):
        runner.run_forever()
    assert runner.history.count(TunnelState.PREFLIGHT) == 3
    assert runner.state == TunnelState.FAILED


def test_cli_run_reports_port_in_use(tmp_path, store, occupied_port, listener, monkeypatch, capsys):
    configs = ConfigStore(tmp_path / "etc")
    configs.save(make_config(via_port=listener.getsockname()[1], bind_host="0.0.0.0", bind_port=occupied_port))
    store.generate("edge-01")
    monkeypatch.setattr(signal, "signal", lambda *a: None)

    with pytest.raises(SystemExit) as exc:
        cli.main(["run", "--service", "svc1", "--config-dir", str(configs.config_dir),
                  "--ssh-dir", str(store.ssh_dir)])

    assert exc.value.code == 20
    assert "PortInUse" in capsys.readouterr().err


def test_kill_tunnel_targets_the_bind_port(monkeypatch):
    seen = []

    def fake_run(cmd, **kwargs):
        seen.append(cmd)
        return subprocess.CompletedProcess(cmd, 1)

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert kill_tunnel(8443) is False
    assert seen == [["pkill", "-f", "ssh .*-L ([^ ]+:)?8443:"]]
