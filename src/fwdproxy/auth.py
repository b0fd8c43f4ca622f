"""Basic auth token for the upstream proxy.

The token is derived once at startup and shared read-only by every
connection handler. Its repr is masked so it cannot leak into log events.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fwdproxy.config import ProxyConfig

PROXY_AUTHORIZATION = "Proxy-Authorization"


def encode_credentials(user: str, password: str) -> str:
    """Return base64("user:password"), the Basic auth token."""
    raw = f"{user}:{password}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


@dataclass(frozen=True)
class Credential:
    token: str = field(repr=False)

    @classmethod
    def from_config(cls, config: ProxyConfig) -> Credential:
        return cls(encode_credentials(config.proxy_user, config.proxy_password.get_secret_value()))

    @property
    def header_value(self) -> str:
        return f"Basic {self.token}"

    @property
    def header_line(self) -> str:
        return f"{PROXY_AUTHORIZATION}: {self.header_value}"

    def __str__(self) -> str:
        return "Basic **********"
