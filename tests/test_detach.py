import io
import stat
import subprocess
import sys
from pathlib import Path

import pytest

from keytunnel.detach import DETACHED_ENV, DetachedExecutionManager, ProgramImage, consume_env_file, is_detached
from keytunnel.errors import MaterializeError, SupervisorError
from keytunnel.supervisor import ENV_FILE_VAR, LocalSupervisor, SystemdSupervisor
from keytunnel.supervisor import systemd

from conftest import FakeSupervisor

EXIT_WITH_DETACHED_FLAG = (
    "import os, sys\n"
    "sys.exit(7 if os.environ.get('KEYTUNNEL_DETACHED') == '1' else 1)\n"
)


def test_module_image_is_stable():
    image = ProgramImage.for_module("keytunnel.cli", ["provision", "--foreground"])
    assert image.is_stable()
    assert image.argv() == [sys.executable, "-m", "keytunnel.cli", "provision", "--foreground"]


@pytest.mark.parametrize("path", ["-", "/dev/fd/63", "/proc/self/fd/0", "/dev/stdin"])
def test_piped_locations_are_not_stable(path):
    assert not ProgramImage.from_file(path, []).is_stable()


def test_stream_is_materialized_before_handoff(tmp_path):
    sup = FakeSupervisor()
    manager = DetachedExecutionManager(sup, tmp_path / "bin")
    image = ProgramImage.from_stream(io.BytesIO(b"print('tunnel setup')\n"), ["--name", "edge-01"])

    handle = manager.run_detached(image, {"KEYTUNNEL_PASSWORD": "s3cret"}, tmp_path / "x.log", "setup-edge")

    saved = tmp_path / "bin" / "setup-edge.py"
    assert saved.read_bytes() == b"print('tunnel setup')\n"
    assert stat.S_IMODE(saved.stat().st_mode) == 0o700
    assert handle.detached
    assert handle.log_path == tmp_path / "x.log"

    _, unit, argv, env, log = sup.calls[-1]
    assert unit == "setup-edge"
    assert argv == [sys.executable, str(saved), "--name", "edge-01"]
    assert env == {"KEYTUNNEL_PASSWORD": "s3cret", DETACHED_ENV: "1"}
    assert ("stop", "setup-edge") in sup.calls


def test_transient_path_without_source_cannot_be_saved(tmp_path):
    manager = DetachedExecutionManager(FakeSupervisor(), tmp_path)
    with pytest.raises(MaterializeError):
        manager.materialize(ProgramImage.from_file("/dev/fd/63", []), "job")


def test_rerun_replaces_existing_unit(tmp_path):
    sup = FakeSupervisor()
    manager = DetachedExecutionManager(sup, tmp_path)
    image = ProgramImage.for_module("keytunnel.cli", [])

    manager.run_detached(image, {}, None, "job")
    manager.run_detached(image, {}, None, "job")

    assert len(sup.running["job"]) == 1


def test_foreground_fallback_without_supervisor(tmp_path):
    script = tmp_path / "prog.py"
    script.write_text(EXIT_WITH_DETACHED_FLAG)
    manager = DetachedExecutionManager(FakeSupervisor(available=False), tmp_path / "bin")

    handle = manager.run_detached(ProgramImage.from_file(script, []), {}, None, "job")

    assert not handle.detached
    assert handle.returncode == 7


def test_foreground_fallback_when_handoff_fails(tmp_path):
    script = tmp_path / "prog.py"
    script.write_text(EXIT_WITH_DETACHED_FLAG)
    sup = FakeSupervisor(fail_start=True)
    manager = DetachedExecutionManager(sup, tmp_path / "bin")

    handle = manager.run_detached(ProgramImage.from_file(script, []), {}, None, "job")

    assert not handle.detached
    assert handle.returncode == 7
    assert sup.calls[-1][0] == "start"


class UnwritableSupervisor(FakeSupervisor):
    def start(self, unit, argv, env, log_sink=None):
        self.calls.append(("start", unit, list(argv), dict(env), log_sink))
        raise PermissionError(13, "Permission denied", str(log_sink))


def exiting_script(tmp_path):
    script = tmp_path / "prog.py"
    script.write_text(EXIT_WITH_DETACHED_FLAG)
    return ProgramImage.from_file(script, [])


def test_foreground_fallback_on_os_error(tmp_path):
    manager = DetachedExecutionManager(UnwritableSupervisor(), tmp_path / "bin")

    handle = manager.run_detached(exiting_script(tmp_path), {}, tmp_path / "x.log", "job")

    assert not handle.detached
    assert handle.returncode == 7


def test_local_supervisor_state_dir_under_a_file_falls_back(tmp_path):
    blocker = tmp_path / "state"
    blocker.write_text("")
    manager = DetachedExecutionManager(LocalSupervisor(blocker / "units"), tmp_path / "bin")

    handle = manager.run_detached(exiting_script(tmp_path), {"KEYTUNNEL_PASSWORD": "s3cret"}, None, "job")

    assert not handle.detached
    assert handle.returncode == 7


def test_failed_systemd_handoff_leaves_no_env_file(monkeypatch, tmp_path):
    def refuse(cmd, check=True):
        if cmd[0] == "systemd-run":
            raise SupervisorError("systemd-run exited 1")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(systemd, "run", refuse)
    sup = SystemdSupervisor(unit_dir=tmp_path / "units", env_dir=tmp_path / "run")
    monkeypatch.setattr(sup, "is_available", lambda: True)
    manager = DetachedExecutionManager(sup, tmp_path / "bin")

    handle = manager.run_detached(exiting_script(tmp_path), {"KEYTUNNEL_PASSWORD": "s3cret"}, None, "job")

    assert not handle.detached
    assert handle.returncode == 7
    assert not sup.env_file("job").exists()


def test_detached_flag_and_env_file(monkeypatch, tmp_path):
    monkeypatch.delenv(DETACHED_ENV, raising=False)
    assert not is_detached()
    monkeypatch.setenv(DETACHED_ENV, "1")
    assert is_detached()

    env_file = tmp_path / "job.env"
    env_file.write_text('KEYTUNNEL_PASSWORD="s3cret"\n')
    monkeypatch.setenv(ENV_FILE_VAR, str(env_file))
    consume_env_file()
    assert not Path(env_file).exists()
