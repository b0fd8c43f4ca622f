"""Tests for the stream helpers' mapping of socket failures to error kinds."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fwdproxy.errors import ClientWriteError, UpstreamClosed, UpstreamReadError
from fwdproxy.streams import close_stream, read_upstream, send_upstream, write_client


def broken_writer(fail_on: str = "write") -> MagicMock:
    """StreamWriter stand-in whose peer has reset the connection."""
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock(side_effect=ConnectionResetError("Connection reset by peer"))
    if fail_on == "write":
        writer.write.side_effect = ConnectionResetError("Connection reset by peer")
    else:
        writer.drain.side_effect = BrokenPipeError("Broken pipe")
    return writer


class TestWrites:
    @pytest.mark.parametrize("fail_on", ["write", "drain"])
    async def test_client_write_failure(self, fail_on):
        with pytest.raises(ClientWriteError):
            await write_client(broken_writer(fail_on), b"HTTP/1.1 200 OK\r\n\r\n")

    @pytest.mark.parametrize("fail_on", ["write", "drain"])
    async def test_upstream_send_failure(self, fail_on):
        with pytest.raises(UpstreamClosed):
            await send_upstream(broken_writer(fail_on), b"GET / HTTP/1.1\r\n\r\n")

    async def test_close_tolerates_reset(self):
        writer = broken_writer()
        await close_stream(writer)
        writer.close.assert_called_once()


class TestReads:
    async def test_timeout(self):
        reader = asyncio.StreamReader()
        with pytest.raises(UpstreamReadError, match="Timed out"):
            await read_upstream(reader, 1024, timeout=0.05)

    async def test_socket_error(self):
        reader = asyncio.StreamReader()
        reader.set_exception(ConnectionResetError("Connection reset by peer"))
        with pytest.raises(UpstreamReadError):
            await read_upstream(reader, 1024, timeout=1)

    async def test_eof_is_empty_bytes(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"HTTP/1.1 200")
        reader.feed_eof()
        assert await read_upstream(reader, 1024, timeout=1) == b"HTTP/1.1 200"
        assert await read_upstream(reader, 1024, timeout=1) == b""
