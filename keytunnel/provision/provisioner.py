"""Credential provisioning: install an identity's key using a password."""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from keytunnel.config.schema import Endpoint
from keytunnel.errors import (
    MissingCredential,
    UnreachableRemote,
    VerificationFailed,
    KeyMissing,
)
from keytunnel.identity import Identity, IdentityStore
from keytunnel.remote import AUTHORIZED_KEYS, RemoteSession, SSHConnector
from keytunnel.retry import BackoffPolicy


class Connector(Protocol):
    def open_password(self, endpoint, password, known_hosts) -> RemoteSession: ...

    def open_key(self, endpoint, private_key, known_hosts) -> RemoteSession: ...


def verify_key_login(connector: Connector, identity: Identity, remote: Endpoint) -> None:
    """Key-only login that must echo the identity's sentinel.

    Any other outcome (auth failure, timeout, wrong output, non-zero exit)
    raises VerificationFailed, except a missing key file which raises
    KeyMissing.
    """
    expected = identity.sentinel
    try:
        with connector.open_key(remote, identity.private_key, identity.known_hosts) as session:
            result = session.run(f"echo {expected}")
    except UnreachableRemote as e:
        raise VerificationFailed(
            f"key-only login failed: {e.message}",
            identity=identity.name, remote=remote, key=identity.private_key,
        ) from e

    output = result.stdout.strip()
    if result.exit_status != 0 or output != expected:
        raise VerificationFailed(
            f"expected {expected!r}, got {output!r} (exit {result.exit_status})",
            identity=identity.name, remote=remote, key=identity.private_key,
        )


class Provisioner:
    """Generates an identity's key and installs it on a remote host.

    Steps run strictly in order: generate -> prepare remote -> append
    key -> verify. Only the network steps in the middle are retried.

    Usage:
        provisioner = Provisioner(IdentityStore("/root/.ssh"))
        identity = provisioner.provision(
            "edge-01",
            Endpoint(host="203.0.113.9", port=2222),
            password=os.environ["KEYTUNNEL_PASSWORD"],
        )
    """

    def __init__(
        self,
        store: IdentityStore,
        connector: Optional[Connector] = None,
        policy: Optional[BackoffPolicy] = None,
        authorized_keys: str = AUTHORIZED_KEYS,
    ):
        self.store = store
        self.connector = connector or SSHConnector()
        self.policy = policy or BackoffPolicy()
        self.authorized_keys = authorized_keys

    def provision(
        self,
        name: str,
        remote: Endpoint,
        password: str,
        reset_existing: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> Identity:
        """Establish key trust for ``name`` on ``remote``.

        Args:
            name: Identity name; namespaces every local artifact
            remote: SSH endpoint to install the key on
            password: Password for the bootstrap session (must be non-empty)
            reset_existing: Delete this identity's artifacts first
            cancel: Event checked between retry attempts

        Returns:
            The authorized Identity

        Raises:
            MissingCredential: Empty password; raised before any side effect
            UnreachableRemote: Bootstrap connect/auth failed on every attempt
            RemoteCommandFailed: The remote refused to create or append the key list
            VerificationFailed: Key-only login did not echo the sentinel
            ProvisionCancelled: ``cancel`` was set between attempts
        """
        if not password:
            raise MissingCredential(
                "no password supplied for non-interactive provisioning",
                identity=name, remote=remote,
            )
        identity = self.store.get(name)

        print(f"[INFO] Provisioning identity {name} on {remote}")
        if reset_existing:
            removed = self.store.reset(name)
            print(f"[WARN] Reset requested, removed {len(removed)} artifact(s) of {name}")

        identity = self.store.generate(name)
        print(f"[INFO] Generated fresh key {identity.private_key}")
        key_line = identity.public_key_line()

        def install() -> bool:
            with self.connector.open_password(remote, password, identity.known_hosts) as session:
                session.ensure_authorized_keys(self.authorized_keys)
                return session.append_line(self.authorized_keys, key_line)

        def on_retry(attempt: int, error: BaseException, delay: float):
            print(f"[WARN] Attempt {attempt}/{self.policy.max_attempts} failed: {error}; retrying in {delay:.1f}s")

        try:
            appended = self.policy.call(
                install, retry_on=(UnreachableRemote,), cancel=cancel, on_retry=on_retry,
            )
        except UnreachableRemote as e:
            e.context.setdefault("identity", name)
            e.context["attempts"] = self.policy.max_attempts
            raise

        if appended:
            print(f"[INFO] Public key appended to {self.authorized_keys} on {remote}")
        else:
            print(f"[INFO] Public key already present in {self.authorized_keys} on {remote}")

        print("[INFO] Testing key-only login...")
        try:
            verify_key_login(self.connector, identity, remote)
        except KeyMissing as e:
            raise VerificationFailed(e.message, identity=name, remote=remote, key=identity.private_key) from e

        self.store.set_authorized(name, True, remote=str(remote))
        print(f"[INFO] {identity.sentinel}")
        print(f"[INFO] Key path: {identity.private_key}")
        return identity
