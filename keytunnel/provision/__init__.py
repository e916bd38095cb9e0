"""Credential provisioning."""

from keytunnel.provision.provisioner import Provisioner, verify_key_login

__all__ = [
    "Provisioner",
    "verify_key_login",
]
