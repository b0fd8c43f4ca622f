"""Per-connection handler: classify the request and dispatch it.

Every error raised while serving a connection stays inside that
connection. It is logged with its kind and the client socket is closed.
"""

from __future__ import annotations

import asyncio
import socket

import structlog

from .auth import Credential
from .classifier import TunnelRequest, read_initial_request
from .config import ProxyConfig
from .errors import ProxyError
from .forward import handle_forward
from .streams import close_stream
from .tunnel import handle_tunnel

log = structlog.get_logger()


class ConnectionHandler:
    """Serves one accepted client socket from start to close."""

    def __init__(self, config: ProxyConfig, credential: Credential) -> None:
        self.config = config
        self.credential = credential

    async def __call__(self, conn: socket.socket, peer: str, conn_id: int) -> None:
        """Entry point for a freshly accepted socket; owns it until closed."""
        # Each task runs in its own context copy, so this binding is per-connection.
        structlog.contextvars.bind_contextvars(conn_id=conn_id, peer=peer)
        try:
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as exc:
            log.error("connection_setup_failed", error=str(exc))
            conn.close()
            return

        log.info("connection_opened")
        try:
            await self.handle(reader, writer)
        except (ProxyError, OSError) as exc:
            log.error("connection_failed", kind=type(exc).__name__, error=str(exc))
        finally:
            await close_stream(writer)

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        request = await read_initial_request(reader, timeout=self.config.client_read_timeout)
        if request is None:
            log.info("client_disconnected_immediately")
            return

        if isinstance(request, TunnelRequest):
            log.info("handling_connect")
            await handle_tunnel(request, reader, writer, self.config, self.credential)
        else:
            log.info("handling_http")
            await handle_forward(request, reader, writer, self.config, self.credential)
        log.info("connection_completed")
