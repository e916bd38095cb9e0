"""Identity storage: keypairs, host caches, authorization status."""

from keytunnel.identity.store import Identity, IdentityStore, identity_name

__all__ = [
    "Identity",
    "IdentityStore",
    "identity_name",
]
