"""Error kinds raised by the acceptor and the per-connection handlers.

Everything except BindError is contained to a single connection: the
connection handler logs it, closes the sockets and the acceptor moves on.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for all proxy errors."""


class BindError(ProxyError):
    """The listening address could not be bound. Fatal at startup."""

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        super().__init__(f"Failed to bind to {address}: {reason}")


class ReadTimeout(ProxyError):
    """The client sent nothing within the initial read timeout."""


class ClientReadError(ProxyError):
    """Reading the initial request from the client failed."""


class MalformedRequest(ProxyError):
    """The request line has too few tokens."""


class EmptyRequest(ProxyError):
    """The request contained no lines at all."""


class UpstreamUnreachable(ProxyError):
    """Connecting to the upstream proxy failed."""


class UpstreamClosed(ProxyError):
    """The upstream proxy closed the connection before answering."""


class UpstreamRejected(ProxyError):
    """The upstream proxy answered CONNECT with something other than 200."""

    def __init__(self, status_line: str) -> None:
        self.status_line = status_line
        super().__init__(f"Upstream proxy returned error: {status_line}")


class UpstreamReadError(ProxyError):
    """Reading from the upstream proxy failed or timed out."""


class ClientWriteError(ProxyError):
    """Writing to the client socket failed."""
