import sys

import pytest

from keytunnel.config import ConfigStore
from keytunnel.retry import BackoffPolicy
from keytunnel.supervisor import LocalSupervisor
from keytunnel.tunnel import TunnelService

from conftest import FakeSupervisor, make_config


@pytest.fixture(autouse=True)
def no_pkill(monkeypatch):
    killed = []
    monkeypatch.setattr("keytunnel.tunnel.service.kill_tunnel", killed.append)
    return killed


def service(tmp_path, supervisor, up=True):
    return TunnelService(
        ConfigStore(tmp_path / "etc"), supervisor, tmp_path / "ssh",
        poll=BackoffPolicy.fixed(2, 0), listening=lambda h, p: up,
    )


def test_install_stops_old_instance_before_starting(tmp_path, no_pkill):
    sup = FakeSupervisor()
    svc = service(tmp_path, sup)
    config = make_config(bind_port=443)

    assert svc.install(config)
    assert svc.install(config)

    kinds = [c[0] for c in sup.calls]
    assert kinds == ["stop", "install_service", "restart"] * 2
    assert len(sup.running["svc1"]) == 1
    assert no_pkill == [443, 443]
    assert svc.configs.load("svc1") == config


def test_install_reports_listener_not_up(tmp_path):
    assert not service(tmp_path, FakeSupervisor(), up=False).install(make_config())


def test_unit_argv_points_at_persisted_record(tmp_path):
    svc = service(tmp_path, FakeSupervisor())
    argv = svc.unit_argv("svc1")
    assert argv[:4] == [sys.executable, "-m", "keytunnel.cli", "run"]
    assert argv[argv.index("--service") + 1] == "svc1"
    assert argv[argv.index("--config-dir") + 1] == str(tmp_path / "etc")
    assert "--keep-alive" not in argv


def test_unit_argv_carries_settings_file(tmp_path):
    svc = TunnelService(
        ConfigStore(tmp_path / "etc"), FakeSupervisor(), tmp_path / "ssh",
        settings_path=tmp_path / "keytunnel.yaml",
    )
    argv = svc.unit_argv("svc1")
    assert argv[:6] == [sys.executable, "-m", "keytunnel.cli", "--settings", str(tmp_path / "keytunnel.yaml"), "run"]


def test_local_supervisor_units_restart_in_process(tmp_path):
    svc = service(tmp_path, LocalSupervisor(tmp_path / "state"))
    assert svc.unit_argv("svc1")[-1] == "--keep-alive"


def test_status(tmp_path):
    sup = FakeSupervisor()
    svc = service(tmp_path, sup)
    svc.install(make_config(bind_port=443))

    info = svc.status("svc1")
    assert info["active"]
    assert info["listening"]
    assert info["identity"] == "edge-01"
    assert info["route"] == "127.0.0.1:443 -> 203.0.113.9:443 via 127.0.0.1:22"

    svc.stop("svc1")
    assert not svc.status("svc1")["active"]
