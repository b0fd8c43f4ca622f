"""Proxy configuration via environment variables (LOCAL_HOST, PROXY_HOST, ...) or defaults."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProxyConfig(BaseSettings):
    local_host: str = "0.0.0.0"
    local_port: int = Field(default=8118, ge=0, le=65535)
    proxy_host: str = "squid"
    proxy_port: int = Field(default=3128, ge=1, le=65535)
    proxy_user: str = ""
    proxy_password: SecretStr = SecretStr("")

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_dir: str | None = None

    client_read_timeout: float = 10.0
    upstream_timeout: float | None = 30.0  # None waits forever
    response_settle_timeout: float = 0.1
    tunnel_linger: float = Field(default=1.0, ge=0)  # after one tunnel side ends
    accept_poll_interval: float = 1.0
    accept_error_backoff: float = 0.1
    shutdown_grace_period: float = 2.0

    model_config = SettingsConfigDict(frozen=True)

    @property
    def listen_address(self) -> str:
        return f"{self.local_host}:{self.local_port}"

    @property
    def upstream_address(self) -> str:
        return f"{self.proxy_host}:{self.proxy_port}"

    @property
    def has_credentials(self) -> bool:
        """Whether a username was configured for the upstream proxy."""
        return bool(self.proxy_user)
