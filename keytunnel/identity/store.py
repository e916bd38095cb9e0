"""On-disk store of per-identity keypairs, host caches and status."""

from __future__ import annotations

import json
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from keytunnel.config.loader import atomic_write
from keytunnel.config.schema import NAME_PATTERN
from keytunnel.errors import InvalidIdentity


def identity_name(label: Optional[str] = None) -> str:
    """Derive an identity name from a label or the local hostname.

    Characters outside ``[A-Za-z0-9._-]`` are replaced with ``-``.

    Raises:
        InvalidIdentity: If nothing usable remains.
    """
    raw = label if label else socket.gethostname()
    name = "".join(c if c.isalnum() or c in "._-" else "-" for c in raw.strip())
    name = name.lstrip(".-_")
    if not name or not NAME_PATTERN.match(name):
        raise InvalidIdentity("cannot derive identity name", label=raw)
    return name


@dataclass(frozen=True)
class Identity:
    """One named trust relationship and the paths that belong to it."""

    name: str
    private_key: Path
    public_key: Path
    known_hosts: Path
    status_file: Path

    @property
    def sentinel(self) -> str:
        """Output the remote must echo for a key-only login of this identity."""
        return f"KEY_OK_FROM_{self.name}"

    @property
    def artifacts(self) -> tuple[Path, ...]:
        return (self.private_key, self.public_key, self.known_hosts, self.status_file)

    def has_key(self) -> bool:
        return self.private_key.is_file() and self.public_key.is_file()

    def public_key_line(self) -> str:
        return self.public_key.read_text().strip()

    def status(self) -> dict:
        if not self.status_file.exists():
            return {"authorized": False}
        with open(self.status_file) as f:
            return json.load(f)

    @property
    def authorized(self) -> bool:
        return bool(self.status().get("authorized", False))


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, data)
    finally:
        os.close(fd)


class IdentityStore:
    """Owns every identity artifact under one SSH directory.

    All operations are scoped to a single identity name; nothing here
    lists, reads or removes files of another identity.

    Layout (mirrors what ssh expects for ``-i`` and ``UserKnownHostsFile``):
        <ssh_dir>/id_ed25519_<name>        private key, 0600
        <ssh_dir>/id_ed25519_<name>.pub    public key, 0644
        <ssh_dir>/known_hosts_<name>       host key cache, 0600
        <ssh_dir>/keytunnel_<name>.json    authorization status, 0600
    """

    def __init__(self, ssh_dir: Union[str, Path]):
        self.ssh_dir = Path(ssh_dir)

    def get(self, name: str) -> Identity:
        if not NAME_PATTERN.match(name):
            raise InvalidIdentity("identity names must match [A-Za-z0-9._-]", identity=name)
        key = self.ssh_dir / f"id_ed25519_{name}"
        return Identity(
            name=name,
            private_key=key,
            public_key=key.with_name(key.name + ".pub"),
            known_hosts=self.ssh_dir / f"known_hosts_{name}",
            status_file=self.ssh_dir / f"keytunnel_{name}.json",
        )

    def ensure_dir(self) -> None:
        self.ssh_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.ssh_dir, 0o700)

    def reset(self, name: str) -> list[Path]:
        """Delete this identity's keys, host cache and status.

        Returns:
            The paths that existed and were removed.
        """
        identity = self.get(name)
        removed = []
        for path in identity.artifacts:
            if path.exists():
                path.unlink()
                removed.append(path)
        return removed

    def generate(self, name: str, comment: Optional[str] = None) -> Identity:
        """Create a fresh Ed25519 keypair, replacing any previous one.

        The identity is marked unauthorized until a key-only check passes.
        """
        identity = self.get(name)
        self.ensure_dir()

        sk = ed25519.Ed25519PrivateKey.generate()
        private = sk.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public = sk.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode()
        if comment is None:
            comment = f"{name}@{socket.gethostname()}"

        _write_private(identity.private_key, private)
        identity.public_key.write_text(f"{public} {comment}\n")
        os.chmod(identity.public_key, 0o644)
        self.ensure_known_hosts(name)
        self.set_authorized(name, False)
        return identity

    def ensure_known_hosts(self, name: str) -> Path:
        """Create the identity's host cache if missing (paramiko needs the file)."""
        identity = self.get(name)
        self.ensure_dir()
        if not identity.known_hosts.exists():
            _write_private(identity.known_hosts, b"")
        return identity.known_hosts

    def set_authorized(self, name: str, authorized: bool, remote: Optional[str] = None) -> None:
        identity = self.get(name)
        status = {"authorized": authorized}
        if authorized:
            status["remote"] = remote
            status["verified_at"] = datetime.now(timezone.utc).isoformat()
        atomic_write(identity.status_file, json.dumps(status, indent=2) + "\n")
