# config.py

from __future__ import annotations

import os
from typing import Any, Dict, Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigInvalid


class ConnectionConfig(BaseSettings):
    """
    Everything the daemon needs, read once from the environment (or a
    ``.env`` file) at startup and never mutated afterwards.

    Variable names are the field names in any case, e.g. ``SSH_HOST``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    # SSH endpoint and credentials
    ssh_host: str
    ssh_port: int = Field(22, ge=1, le=65535)
    ssh_username: str
    ssh_private_key_path: str
    ssh_passphrase: Optional[str] = None

    # Forwarding.  In reverse mode the server listens on remote_host:remote_port
    # and we connect out to local_host:local_port; forward mode is the mirror.
    local_host: str = "127.0.0.1"
    local_port: int = Field(..., ge=1, le=65535)
    remote_host: str = "0.0.0.0"
    remote_port: int = Field(..., ge=0, le=65535)   # 0 => server picks
    tunnel_mode: Literal["reverse", "forward"] = "reverse"

    # Timing (seconds)
    health_check_interval: float = Field(30.0, gt=0)
    health_check_timeout: float = Field(10.0, gt=0)
    max_health_check_failures: int = Field(3, ge=1)
    reconnect_delay: float = Field(5.0, ge=0)
    connect_timeout: float = Field(15.0, gt=0)
    keepalive_interval: int = Field(30, ge=0)      # 0 disables

    log_level: str = "INFO"

    # Status HTTP surface
    web_enabled: bool = True
    web_interface: str = "0.0.0.0"
    web_port: int = Field(8080, ge=1, le=65535)

    @property
    def ssh_url(self) -> str:
        return format_endpoint(self.ssh_host, self.ssh_port)

    @property
    def local_bind(self) -> str:
        return format_endpoint(self.local_host, self.local_port)

    @property
    def remote_bind(self) -> str:
        return format_endpoint(self.remote_host, self.remote_port)

    @property
    def passphrase(self) -> Optional[str]:
        """The passphrase to hand to the key loader, or None if unset/empty."""
        return self.ssh_passphrase or None


def format_endpoint(host: str, port: int) -> str:
    """``("h", 2222)`` -> ``"h:2222"``."""
    return f"{host}:{port}"


def load_config(**overrides: Any) -> ConnectionConfig:
    """
    Build the config from the environment.  Keyword overrides win over the
    environment (handy for tests and for ``_env_file=None``).
    """
    try:
        return ConnectionConfig(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigInvalid(f"Invalid configuration: {problems}") from e


def check_private_key(config: ConnectionConfig) -> None:
    """
    Fail fast if the private key is missing.  Runs before any connection
    attempt; a missing key is not something retrying can fix.
    """
    path = os.path.expanduser(config.ssh_private_key_path)
    if not os.path.exists(path):
        raise ConfigInvalid(f"SSH private key not found at: {path}")
    if not os.path.isfile(path):
        raise ConfigInvalid(f"SSH private key path is not a file: {path}")


def describe(config: ConnectionConfig) -> Dict[str, Any]:
    """Non-secret view of the config (no passphrase, no key path)."""
    return {
        "ssh_host": config.ssh_host,
        "ssh_port": config.ssh_port,
        "ssh_username": config.ssh_username,
        "local_host": config.local_host,
        "local_port": config.local_port,
        "remote_host": config.remote_host,
        "remote_port": config.remote_port,
        "tunnel_mode": config.tunnel_mode,
        "health_check_interval": config.health_check_interval,
        "reconnect_delay": config.reconnect_delay,
        "max_health_check_failures": config.max_health_check_failures,
    }
