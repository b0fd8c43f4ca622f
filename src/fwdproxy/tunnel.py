"""CONNECT handling: negotiate with the upstream proxy, then tunnel bytes.

Once the upstream accepts the CONNECT, traffic in both directions is copied
verbatim. Nothing after the 200 line is inspected, so TLS passes through
untouched.
"""

from __future__ import annotations

import asyncio

import structlog

from .auth import Credential
from .classifier import WIRE_ENCODING, TunnelRequest, parse_request_line, split_lines
from .config import ProxyConfig
from .errors import MalformedRequest, UpstreamClosed, UpstreamRejected
from .streams import close_stream, open_upstream, read_upstream, send_upstream, write_client

log = structlog.get_logger()

CONNECT_RESPONSE_LIMIT = 1024
RELAY_BUF_SIZE = 65536
CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection established\r\n\r\n"
DEFAULT_TUNNEL_LINGER = 1.0


def parse_connect_target(text: str) -> str:
    """Return the host:port of a CONNECT request."""
    lines = split_lines(text)
    if not lines:
        raise MalformedRequest("Invalid CONNECT request: no request line")
    return parse_request_line(lines[0], min_tokens=2).target


def build_connect_request(target: str, credential: Credential) -> bytes:
    return (
        f"CONNECT {target} HTTP/1.1\r\n"
        f"Host: {target}\r\n"
        f"{credential.header_line}\r\n"
        "Proxy-Connection: Keep-Alive\r\n"
        "\r\n"
    ).encode(WIRE_ENCODING)


async def _relay(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    counts: list[int],
    index: int,
) -> None:
    """Copy bytes from reader to writer until EOF, adding to ``counts[index]``.

    On EOF the writer is half-closed with write_eof() rather than closed,
    so the opposite direction can still deliver its remaining data.
    Socket errors propagate to the caller.
    """
    while True:
        data = await reader.read(RELAY_BUF_SIZE)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        counts[index] += len(data)
    try:
        if writer.can_write_eof():
            writer.write_eof()
    except OSError:
        pass


async def relay_bidirectional(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
    linger: float = DEFAULT_TUNNEL_LINGER,
) -> tuple[int, int]:
    """Relay both directions until one ends, then terminate the other.

    After the first direction reaches EOF, the other one gets ``linger``
    seconds to flush what its peer still sends before it is cancelled.
    An I/O error in either direction cancels the other immediately.

    Returns (client_bytes, upstream_bytes): bytes sent by the client and
    bytes sent back by the upstream, including partial transfers.
    """
    counts = [0, 0]
    to_upstream = asyncio.create_task(_relay(client_reader, upstream_writer, counts, 0))
    to_client = asyncio.create_task(_relay(upstream_reader, client_writer, counts, 1))
    tasks = (to_upstream, to_client)
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        if pending and not any(task.exception() for task in done):
            await asyncio.wait(pending, timeout=linger)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for direction, task in zip(("client->upstream", "upstream->client"), tasks):
        if task.cancelled():
            log.debug("relay_closed", direction=direction, error="terminated")
        elif task.exception() is not None:
            log.debug("relay_closed", direction=direction, error=str(task.exception()))
    return counts[0], counts[1]


async def handle_tunnel(
    request: TunnelRequest,
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    config: ProxyConfig,
    credential: Credential,
) -> None:
    """Establish a CONNECT tunnel through the upstream proxy."""
    target = parse_connect_target(request.text)
    log.info("connect_request", target=target)

    upstream_reader, upstream_writer = await open_upstream(config)
    try:
        await send_upstream(upstream_writer, build_connect_request(target, credential))
        log.info("connect_sent_upstream", target=target)

        response = await read_upstream(upstream_reader, CONNECT_RESPONSE_LIMIT, config.upstream_timeout)
        if not response:
            raise UpstreamClosed("Upstream proxy closed connection")

        response_text = response.decode("utf-8", errors="replace")
        log.debug("upstream_connect_response", response=response_text)
        if "200" not in response_text:
            status_line = split_lines(response_text)[0] if response_text.strip() else response_text
            # Relay the upstream's answer so auth/policy failures reach the client.
            await write_client(client_writer, response)
            raise UpstreamRejected(status_line)

        await write_client(client_writer, CONNECTION_ESTABLISHED)
        log.info("tunnel_established", target=target)

        client_bytes, upstream_bytes = await relay_bidirectional(
            client_reader, client_writer, upstream_reader, upstream_writer,
            linger=config.tunnel_linger,
        )
        log.info(
            "tunnel_closed",
            target=target,
            client_bytes=client_bytes,
            upstream_bytes=upstream_bytes,
        )
    finally:
        await close_stream(upstream_writer)
