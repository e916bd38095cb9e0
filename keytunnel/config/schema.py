"""Pydantic configuration schemas for keytunnel."""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SERVICE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]*$")


class RetryConfig(BaseModel):
    """Backoff settings for network-crossing operations."""
    max_attempts: int = Field(default=5, ge=1, description="Attempt cap for bootstrap connect + append")
    base_delay: float = Field(default=1.0, ge=0, description="Delay before the second attempt (seconds)")
    factor: float = Field(default=2.0, ge=1, description="Exponential growth per attempt")
    max_delay: float = Field(default=30.0, ge=0, description="Upper bound on a single delay")
    poll_attempts: int = Field(default=10, ge=1, description="Listening checks after a restart")
    poll_interval: float = Field(default=1.0, ge=0, description="Seconds between listening checks")


class SSHConfig(BaseModel):
    """Timeouts for SSH sessions opened by keytunnel itself."""
    connect_timeout: float = Field(default=10.0, gt=0, description="TCP connect timeout")
    banner_timeout: float = Field(default=15.0, gt=0, description="SSH banner timeout")
    auth_timeout: float = Field(default=15.0, gt=0, description="Authentication timeout")
    command_timeout: float = Field(default=30.0, gt=0, description="Remote command timeout")


class Settings(BaseModel):
    """Host-wide settings. Paths default to the layout used on managed hosts."""
    config_dir: str = Field(default="/etc/keytunnel", description="Directory of per-service tunnel records")
    ssh_dir: str = Field(default="/root/.ssh", description="Directory for identity keys and host caches")
    log_dir: str = Field(default="/var/log", description="Log sink directory for detached runs")
    bin_dir: str = Field(default="/usr/local/bin", description="Where streamed programs are materialized")
    unit_dir: str = Field(default="/etc/systemd/system", description="systemd unit directory")
    retry: RetryConfig = Field(default_factory=RetryConfig, description="Backoff policy")
    ssh: SSHConfig = Field(default_factory=SSHConfig, description="SSH session timeouts")


class Endpoint(BaseModel):
    """SSH endpoint used to establish trust or the tunnel."""
    host: str = Field(description="Remote host or address")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    user: str = Field(default="root", description="Remote login user")

    def __str__(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


class HostPort(BaseModel):
    host: str = Field(description="Host or address")
    port: int = Field(ge=1, le=65535, description="TCP port")

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class KeepaliveConfig(BaseModel):
    """Liveness probing of an established tunnel."""
    interval: int = Field(default=20, ge=1, description="ServerAliveInterval (seconds)")
    count_max: int = Field(default=3, ge=1, description="ServerAliveCountMax")
    connect_timeout: int = Field(default=10, ge=1, description="ConnectTimeout (seconds)")
    connection_attempts: int = Field(default=3, ge=1, description="ConnectionAttempts")
    probe_interval: float = Field(default=10.0, gt=0, description="Seconds between local listener probes")
    probe_failures: int = Field(default=3, ge=1, description="Consecutive probe failures before teardown")
    establish_timeout: float = Field(default=30.0, gt=0, description="Seconds to wait for the listener")


class RestartPolicy(BaseModel):
    """Always restart, short fixed delay, capped start rate."""
    delay: float = Field(default=2.0, ge=0, description="RestartSec")
    burst: int = Field(default=10, ge=1, description="StartLimitBurst")
    interval: int = Field(default=60, ge=1, description="StartLimitIntervalSec")


class TunnelConfig(BaseModel):
    """Persisted record of one supervised forwarding session."""
    service_name: str = Field(description="Unique service / supervisor unit name")
    via: Endpoint = Field(description="SSH endpoint carrying the tunnel")
    identity: str = Field(description="Identity whose key authenticates the tunnel")
    bind: HostPort = Field(description="Local listener address")
    target: HostPort = Field(description="Destination reached from the remote side")
    keepalive: KeepaliveConfig = Field(default_factory=KeepaliveConfig)
    restart: RestartPolicy = Field(default_factory=RestartPolicy)

    @field_validator("service_name")
    @classmethod
    def _check_service_name(cls, v: str) -> str:
        if not SERVICE_PATTERN.match(v):
            raise ValueError(f"invalid service name: {v!r}")
        return v

    @field_validator("identity")
    @classmethod
    def _check_identity(cls, v: str) -> str:
        if not NAME_PATTERN.match(v):
            raise ValueError(f"invalid identity name: {v!r}")
        return v

    def describe(self) -> str:
        return f"{self.bind} -> {self.target} via {self.via.host}:{self.via.port}"

    def with_via_host(self, host: str) -> "TunnelConfig":
        """Copy of this record with only ``via.host`` replaced."""
        return self.model_copy(update={"via": self.via.model_copy(update={"host": host})})

    def get_probe_host(self) -> Optional[str]:
        """Address to connect to when checking the local listener."""
        if self.bind.host in ("0.0.0.0", "", "*"):
            return "127.0.0.1"
        if self.bind.host == "::":
            return "::1"
        return self.bind.host
