"""Initial client read and CONNECT-vs-forward classification.

Only the first bytes of a connection are inspected here. Full parsing of
the request line is left to the handler that receives the request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import NamedTuple, Union

import structlog

from .errors import ClientReadError, MalformedRequest, ReadTimeout

log = structlog.get_logger()

INITIAL_READ_LIMIT = 1024
CONNECT_PREFIX = b"CONNECT"

# Latin-1 maps every byte to one code point, so decode/encode is lossless.
WIRE_ENCODING = "iso-8859-1"


@dataclass(frozen=True)
class TunnelRequest:
    """A CONNECT request, handled by opening a byte tunnel."""

    raw: bytes

    @property
    def text(self) -> str:
        return self.raw.decode(WIRE_ENCODING)


@dataclass(frozen=True)
class ForwardRequest:
    """Any other request, forwarded upstream with auth injected."""

    raw: bytes

    @property
    def text(self) -> str:
        return self.raw.decode(WIRE_ENCODING)


ClassifiedRequest = Union[TunnelRequest, ForwardRequest]


class RequestLine(NamedTuple):
    method: str
    target: str
    version: str | None


def classify(data: bytes) -> ClassifiedRequest:
    if data.startswith(CONNECT_PREFIX):
        return TunnelRequest(data)
    return ForwardRequest(data)


async def read_initial_request(
    reader: asyncio.StreamReader,
    timeout: float,
    limit: int = INITIAL_READ_LIMIT,
) -> ClassifiedRequest | None:
    """Read the first chunk from a new client and classify it.

    Returns None when the client disconnected without sending anything.
    """
    try:
        data = await asyncio.wait_for(reader.read(limit), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ReadTimeout(f"Timeout reading from client after {timeout}s") from exc
    except OSError as exc:
        raise ClientReadError(f"Error reading from client: {exc}") from exc

    if not data:
        return None

    log.debug("request_received", request=data.decode(WIRE_ENCODING))
    return classify(data)


def split_lines(text: str) -> list[str]:
    """Split on LF, dropping a trailing CR from each line.

    A terminating newline does not produce an extra empty line.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_request_line(line: str, min_tokens: int) -> RequestLine:
    """Split a request line into method, target and (optional) version."""
    parts = line.split()
    if len(parts) < min_tokens:
        raise MalformedRequest(f"Invalid request line: {line!r}")
    version = parts[2] if len(parts) > 2 else None
    return RequestLine(parts[0], parts[1], version)
