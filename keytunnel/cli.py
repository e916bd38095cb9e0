"""Command-line interface for keytunnel."""

from __future__ import annotations

import argparse
import os
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import tyro

from keytunnel.config import (
    ConfigStore,
    Endpoint,
    HostPort,
    Settings,
    TunnelConfig,
    load_settings_or_default,
    resolve_settings_path,
)
from keytunnel.errors import KeyTunnelError, MissingCredential, RestartTimeout

PASSWORD_ENV = "KEYTUNNEL_PASSWORD"
SERVICE_ENV = "KEYTUNNEL_SERVICE"
DEFAULT_SERVICE = "keytunnel-tunnel"


@dataclass
class ProvisionArgs:
    """Install a fresh identity key on a remote host using its password."""
    host: str
    """Remote SSH host"""
    port: int = 22
    """Remote SSH port"""
    user: str = "root"
    """Remote login user"""
    name: Optional[str] = None
    """Identity label (default: local hostname)"""
    password: str = ""
    """Password for the bootstrap login (default: $KEYTUNNEL_PASSWORD)"""
    reset: bool = False
    """Delete this identity's key and host cache first"""
    attempts: Optional[int] = None
    """Retry cap for connect + append (default: settings)"""
    foreground: bool = False
    """Do not hand off to the process supervisor"""
    settings: Optional[str] = None
    """Path to settings file"""


@dataclass
class InstallArgs:
    """Persist a tunnel record and start its supervised service."""
    service: str
    via_host: str
    bind_port: int
    target_host: str
    target_port: int
    identity: str
    via_port: int = 22
    via_user: str = "root"
    bind_host: str = "0.0.0.0"
    wait: bool = True
    """Wait for the bind port to listen"""
    settings: Optional[str] = None


@dataclass
class RunArgs:
    """Run one tunnel in the foreground (the supervisor's entry point)."""
    service: str
    config_dir: Optional[str] = None
    ssh_dir: Optional[str] = None
    keep_alive: bool = False
    """Restart in-process instead of exiting on failure"""
    settings: Optional[str] = None


@dataclass
class ServiceArgs:
    """Address one installed tunnel service."""
    service: str
    settings: Optional[str] = None


@dataclass
class SetEndpointArgs:
    """Point a tunnel at a new SSH endpoint and restart it."""
    host: tyro.conf.Positional[str]
    """New via-host (IPv4, IPv6 or host name)"""
    service: str = field(default_factory=lambda: os.environ.get(SERVICE_ENV, DEFAULT_SERVICE))
    """Tunnel service to edit (default: $KEYTUNNEL_SERVICE)"""
    settings: Optional[str] = None
    """Path to settings file"""


def _settings(path: Optional[str]) -> Settings:
    return load_settings_or_default(path)


def _existing_settings(path: Optional[str]) -> Optional[Path]:
    resolved = resolve_settings_path(path)
    return resolved.absolute() if resolved.exists() else None


def _supervisor(settings: Settings):
    from keytunnel.supervisor import default_supervisor
    return default_supervisor(settings.unit_dir)


def _policy(settings: Settings, attempts: Optional[int] = None):
    from keytunnel.retry import BackoffPolicy
    r = settings.retry
    return BackoffPolicy(
        max_attempts=attempts or r.max_attempts,
        base_delay=r.base_delay,
        factor=r.factor,
        max_delay=r.max_delay,
    )


def _poll(settings: Settings):
    from keytunnel.retry import BackoffPolicy
    return BackoffPolicy.fixed(settings.retry.poll_attempts, settings.retry.poll_interval)


def cmd_provision(args: ProvisionArgs) -> int:
    """Execute provision command."""
    from keytunnel.detach import (
        DetachedExecutionManager,
        ProgramImage,
        consume_env_file,
        is_detached,
    )
    from keytunnel.identity import IdentityStore, identity_name
    from keytunnel.provision import Provisioner
    from keytunnel.remote import SSHConnector

    settings = _settings(args.settings)
    name = identity_name(args.name)
    remote = Endpoint(host=args.host, port=args.port, user=args.user)
    password = args.password or os.environ.get(PASSWORD_ENV, "")
    if not password:
        raise MissingCredential(
            f"set --password or ${PASSWORD_ENV}", identity=name, remote=remote,
        )

    if is_detached():
        consume_env_file()
    elif not args.foreground:
        child_args = [
            "provision", "--host", args.host, "--port", str(args.port),
            "--user", args.user, "--name", name, "--foreground",
        ]
        if args.reset:
            child_args.append("--reset")
        if args.attempts:
            child_args += ["--attempts", str(args.attempts)]
        settings_path = _existing_settings(args.settings)
        if settings_path:
            child_args = ["--settings", str(settings_path), *child_args]

        manager = DetachedExecutionManager(_supervisor(settings), settings.bin_dir)
        handle = manager.run_detached(
            ProgramImage.for_module("keytunnel.cli", child_args),
            env={PASSWORD_ENV: password},
            log_sink=Path(settings.log_dir) / f"keytunnel-provision_{name}.log",
            unit=f"keytunnel-provision-{name}",
        )
        return 0 if handle.detached else (handle.returncode or 0)

    print(f"==== KEYTUNNEL PROVISION ({name}) ====")
    provisioner = Provisioner(
        IdentityStore(settings.ssh_dir),
        SSHConnector(settings.ssh),
        _policy(settings, args.attempts),
    )
    provisioner.provision(name, remote, password, reset_existing=args.reset)
    print("[INFO] DONE")
    return 0


def cmd_install(args: InstallArgs) -> int:
    """Execute install command."""
    from keytunnel.tunnel import TunnelService

    settings = _settings(args.settings)
    supervisor = _supervisor(settings)
    supervisor.check_privileges()
    config = TunnelConfig(
        service_name=args.service,
        via=Endpoint(host=args.via_host, port=args.via_port, user=args.via_user),
        identity=args.identity,
        bind=HostPort(host=args.bind_host, port=args.bind_port),
        target=HostPort(host=args.target_host, port=args.target_port),
    )
    service = TunnelService(
        ConfigStore(settings.config_dir), supervisor, settings.ssh_dir, poll=_poll(settings),
        settings_path=_existing_settings(args.settings),
    )
    ok = service.install(config, wait=args.wait)
    print(f"Use: keytunnel set-endpoint {args.service} NEW_HOST")
    return 0 if ok else 1


def cmd_run(args: RunArgs) -> int:
    """Execute run command."""
    from keytunnel.identity import IdentityStore
    from keytunnel.remote import SSHConnector
    from keytunnel.tunnel import TunnelRunner

    settings = _settings(args.settings)
    config = ConfigStore(args.config_dir or settings.config_dir).load(args.service)
    runner = TunnelRunner(config, IdentityStore(args.ssh_dir or settings.ssh_dir), SSHConnector(settings.ssh))

    def handle_signal(signum, frame):
        print(f"\nReceived signal {signum}, shutting down...")
        runner.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    if args.keep_alive:
        runner.run_forever()
    else:
        runner.run_once()
    return 0


def cmd_stop(args: ServiceArgs) -> int:
    """Execute stop command."""
    from keytunnel.tunnel import TunnelService

    settings = _settings(args.settings)
    TunnelService(ConfigStore(settings.config_dir), _supervisor(settings), settings.ssh_dir).stop(args.service)
    return 0


def cmd_status(args: ServiceArgs) -> int:
    """Execute status command."""
    from keytunnel.tunnel import TunnelService

    settings = _settings(args.settings)
    service = TunnelService(ConfigStore(settings.config_dir), _supervisor(settings), settings.ssh_dir)
    info = service.status(args.service)

    print(f"Tunnel {info['service']}:")
    print("-" * 60)
    print(f"  Route:     {info['route']}")
    print(f"  Identity:  {info['identity']}")
    print(f"  Active:    {'yes' if info['active'] else 'no'}")
    print(f"  Listening: {'yes' if info['listening'] else 'no'}")
    print()
    print(info["supervisor"])
    return 0 if info["listening"] else 3


def cmd_set_endpoint(args: SetEndpointArgs) -> int:
    """Execute set-endpoint command."""
    from keytunnel.reconfig import set_endpoint

    settings = _settings(args.settings)
    set_endpoint(
        args.service,
        args.host,
        ConfigStore(settings.config_dir),
        _supervisor(settings),
        poll=_poll(settings),
    )
    return 0


def _dispatch(fn: Callable[[], int]) -> None:
    """Run a command, turning keytunnel errors into reason + exit code."""
    try:
        code = fn()
    except KeyTunnelError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        if isinstance(e, RestartTimeout) and e.logs:
            print(e.logs, file=sys.stderr)
        sys.exit(e.exit_code)
    sys.exit(code)


def set_endpoint_main():
    """Entry point for keytunnel-set-endpoint."""
    args = tyro.cli(SetEndpointArgs)
    _dispatch(lambda: cmd_set_endpoint(args))


def main(argv: Optional[list[str]] = None):
    """Main entry point for keytunnel CLI."""
    parser = argparse.ArgumentParser(
        description="SSH key provisioning and self-healing tunnels",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Install a fresh key for identity edge-01 (runs detached, logs in /var/log)
  KEYTUNNEL_PASSWORD=... keytunnel provision --host 203.0.113.9 --port 2222 --name edge-01

  # Forward local 0.0.0.0:443 to 203.0.113.9:443 through the remote sshd
  keytunnel install --service edge-tunnel --via-host 203.0.113.9 --via-port 2222 \\
      --identity edge-01 --bind-port 443 --target-host 203.0.113.9 --target-port 443

  # Move the tunnel to a new endpoint
  keytunnel set-endpoint edge-tunnel 203.0.113.10
""",
    )
    parser.add_argument("--settings", default=None, help="Settings file path")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # provision command
    prov_parser = subparsers.add_parser("provision", help="Install an identity key on a remote host")
    prov_parser.add_argument("--host", required=True, help="Remote SSH host")
    prov_parser.add_argument("--port", type=int, default=22, help="Remote SSH port")
    prov_parser.add_argument("--user", default="root", help="Remote login user")
    prov_parser.add_argument("--name", default=None, help="Identity label (default: hostname)")
    prov_parser.add_argument("--password", default="", help=f"Bootstrap password (or ${PASSWORD_ENV})")
    prov_parser.add_argument("--reset", action="store_true", help="Delete this identity's artifacts first")
    prov_parser.add_argument("--attempts", type=int, default=None, help="Retry cap for connect + append")
    prov_parser.add_argument("--foreground", action="store_true", help="Do not detach")

    # install command
    inst_parser = subparsers.add_parser("install", help="Install and start a tunnel service")
    inst_parser.add_argument("--service", default=DEFAULT_SERVICE, help="Service name")
    inst_parser.add_argument("--via-host", required=True, help="SSH endpoint host")
    inst_parser.add_argument("--via-port", type=int, default=22, help="SSH endpoint port")
    inst_parser.add_argument("--via-user", default="root", help="SSH endpoint user")
    inst_parser.add_argument("--identity", required=True, help="Identity name")
    inst_parser.add_argument("--bind-host", default="0.0.0.0", help="Local listener host")
    inst_parser.add_argument("--bind-port", type=int, required=True, help="Local listener port")
    inst_parser.add_argument("--target-host", required=True, help="Remote-side target host")
    inst_parser.add_argument("--target-port", type=int, required=True, help="Remote-side target port")
    inst_parser.add_argument("--no-wait", action="store_true", help="Do not wait for the listener")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a tunnel in the foreground")
    run_parser.add_argument("--service", required=True, help="Service name")
    run_parser.add_argument("--config-dir", default=None, help="Directory of tunnel records")
    run_parser.add_argument("--ssh-dir", default=None, help="Identity directory")
    run_parser.add_argument("--keep-alive", action="store_true", help="Restart in-process on failure")

    # stop / status commands
    for name, help_text in (("stop", "Stop a tunnel service"), ("status", "Show tunnel status")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("service", help="Service name")

    # set-endpoint command
    set_parser = subparsers.add_parser("set-endpoint", help="Change a tunnel's SSH endpoint")
    set_parser.add_argument("service", help="Service name")
    set_parser.add_argument("host", help="New via-host")

    args = parser.parse_args(argv)

    if args.command == "provision":
        _dispatch(lambda: cmd_provision(ProvisionArgs(
            host=args.host,
            port=args.port,
            user=args.user,
            name=args.name,
            password=args.password,
            reset=args.reset,
            attempts=args.attempts,
            foreground=args.foreground,
            settings=args.settings,
        )))
    elif args.command == "install":
        _dispatch(lambda: cmd_install(InstallArgs(
            service=args.service,
            via_host=args.via_host,
            via_port=args.via_port,
            via_user=args.via_user,
            identity=args.identity,
            bind_host=args.bind_host,
            bind_port=args.bind_port,
            target_host=args.target_host,
            target_port=args.target_port,
            wait=not args.no_wait,
            settings=args.settings,
        )))
    elif args.command == "run":
        _dispatch(lambda: cmd_run(RunArgs(
            service=args.service,
            config_dir=args.config_dir,
            ssh_dir=args.ssh_dir,
            keep_alive=args.keep_alive,
            settings=args.settings,
        )))
    elif args.command == "stop":
        _dispatch(lambda: cmd_stop(ServiceArgs(service=args.service, settings=args.settings)))
    elif args.command == "status":
        _dispatch(lambda: cmd_status(ServiceArgs(service=args.service, settings=args.settings)))
    elif args.command == "set-endpoint":
        _dispatch(lambda: cmd_set_endpoint(SetEndpointArgs(
            host=args.host,
            service=args.service,
            settings=args.settings,
        )))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
