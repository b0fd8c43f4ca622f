"""Plain HTTP forwarding with Proxy-Authorization injection.

One request/response pair is relayed per connection. The response has no
framing awareness: after a short chunk, a follow-up read bounded by
``response_settle_timeout`` decides whether the response is finished.
This can cut off a slow response or wait a little on a fast one. It is a
best-effort heuristic, kept instead of Content-Length/chunked parsing.
"""

from __future__ import annotations

import asyncio

import structlog

from .auth import PROXY_AUTHORIZATION, Credential
from .classifier import WIRE_ENCODING, ForwardRequest, parse_request_line, split_lines
from .config import ProxyConfig
from .errors import EmptyRequest, UpstreamReadError
from .streams import close_stream, open_upstream, send_upstream, write_client

log = structlog.get_logger()

RESPONSE_BUF_SIZE = 8192
_AUTH_PREFIX = PROXY_AUTHORIZATION.lower() + ":"


def rewrite_request(text: str, credential: Credential) -> str:
    """Return the request with exactly one Proxy-Authorization header.

    A client-supplied header is replaced in place; otherwise ours is
    inserted just before the blank line ending the header block. Lines
    after that blank line are left alone. Output uses CRLF line endings
    and ends with a trailing CRLF.
    """
    out: list[str] = []
    has_auth = False
    in_headers = True

    for line in split_lines(text):
        if not in_headers:
            out.append(line)
        elif line.lower().startswith(_AUTH_PREFIX):
            if not has_auth:
                out.append(credential.header_line)
                has_auth = True
        elif line:
            out.append(line)
        else:
            if not has_auth:
                out.append(credential.header_line)
                has_auth = True
            out.append(line)
            in_headers = False

    if not has_auth:
        # Header block was truncated by the initial read.
        out.append(credential.header_line)

    return "\r\n".join(out) + "\r\n"


async def _relay_response(
    upstream_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    config: ProxyConfig,
) -> int:
    total = 0
    settling = False
    while True:
        timeout = config.response_settle_timeout if settling else config.upstream_timeout
        try:
            chunk = await asyncio.wait_for(upstream_reader.read(RESPONSE_BUF_SIZE), timeout=timeout)
        except asyncio.TimeoutError as exc:
            if settling:
                break
            raise UpstreamReadError(f"Timed out after {timeout}s reading from upstream") from exc
        except OSError as exc:
            raise UpstreamReadError(f"Error reading from upstream: {exc}") from exc

        if not chunk:
            break

        await write_client(client_writer, chunk)
        total += len(chunk)
        settling = len(chunk) < RESPONSE_BUF_SIZE
    return total


async def handle_forward(
    request: ForwardRequest,
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    config: ProxyConfig,
    credential: Credential,
) -> None:
    """Forward a plain HTTP request upstream and relay the response."""
    text = request.text
    lines = split_lines(text)
    if not lines:
        raise EmptyRequest("Empty request")
    request_line = parse_request_line(lines[0], min_tokens=3)
    log.info("http_request", method=request_line.method, uri=request_line.target)

    upstream_reader, upstream_writer = await open_upstream(config)
    try:
        rewritten = rewrite_request(text, credential)
        await send_upstream(upstream_writer, rewritten.encode(WIRE_ENCODING))
        log.debug("request_sent_upstream", size=len(rewritten))

        total = await _relay_response(upstream_reader, client_writer, config)
        log.info("http_request_completed", response_bytes=total)
    finally:
        await close_stream(upstream_writer)
