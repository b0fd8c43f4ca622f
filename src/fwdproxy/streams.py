"""asyncio stream helpers shared by the tunnel and forward handlers.

Each helper maps socket failures onto the proxy's error kinds so the
handlers only deal with ProxyError subclasses.
"""

from __future__ import annotations

import asyncio

import structlog

from .config import ProxyConfig
from .errors import ClientWriteError, UpstreamClosed, UpstreamReadError, UpstreamUnreachable

log = structlog.get_logger()


async def open_upstream(config: ProxyConfig) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a fresh connection to the upstream proxy."""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(config.proxy_host, config.proxy_port),
            timeout=config.upstream_timeout,
        )
    except asyncio.TimeoutError as exc:
        raise UpstreamUnreachable(f"Timed out connecting to {config.upstream_address}") from exc
    except OSError as exc:
        raise UpstreamUnreachable(f"Cannot connect to {config.upstream_address}: {exc}") from exc
    log.info("upstream_connected", upstream=config.upstream_address)
    return reader, writer


async def read_upstream(reader: asyncio.StreamReader, limit: int, timeout: float | None) -> bytes:
    """Single read of at most ``limit`` bytes from upstream. b"" means EOF."""
    try:
        return await asyncio.wait_for(reader.read(limit), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamReadError(f"Timed out after {timeout}s reading from upstream") from exc
    except OSError as exc:
        raise UpstreamReadError(f"Error reading from upstream: {exc}") from exc


async def send_upstream(writer: asyncio.StreamWriter, data: bytes) -> None:
    try:
        writer.write(data)
        await writer.drain()
    except OSError as exc:
        raise UpstreamClosed(f"Upstream closed connection while sending: {exc}") from exc


async def write_client(writer: asyncio.StreamWriter, data: bytes) -> None:
    try:
        writer.write(data)
        await writer.drain()
    except OSError as exc:
        raise ClientWriteError(f"Error writing to client: {exc}") from exc


async def close_stream(writer: asyncio.StreamWriter) -> None:
    """Close a stream and wait for the transport to go away."""
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:
        log.debug("close_error", error=str(exc))
