"""Shared fixtures: a fake authenticating upstream proxy and a running forward proxy."""

from __future__ import annotations

import asyncio
import base64

import pytest

from fwdproxy.config import ProxyConfig
from fwdproxy.server import ProxyServer

USER = "alice"
PASSWORD = "secret"
TOKEN = base64.b64encode(b"alice:secret").decode()

HTTP_RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nContent-Type: text/plain\r\n\r\nhello"
CONNECT_OK = b"HTTP/1.1 200 Connection established\r\n\r\n"
AUTH_REQUIRED = (
    b"HTTP/1.1 407 Proxy Authentication Required\r\n"
    b'Proxy-Authenticate: Basic realm="test"\r\n'
    b"Content-Length: 0\r\n\r\n"
)


class FakeUpstream:
    """Minimal authenticating HTTP proxy.

    Records the header block of every request it receives. CONNECT
    requests are echoed back (``tunnel="echo"``), dialed to the real target
    (``tunnel="dial"``) or read to EOF and then held open without closing
    (``tunnel="hold"``). Plain requests get ``http_response``. Setting
    ``connect_response`` or ``http_response`` to None makes the upstream
    accept the request and never answer.
    """

    def __init__(self) -> None:
        self.port = 0
        self.requests: list[bytes] = []
        self.tunnel_bytes = bytearray()
        self.expected_token: str | None = TOKEN
        self.connect_response = CONNECT_OK
        self.http_response = HTTP_RESPONSE
        self.close_after_response = True
        self.tunnel = "echo"
        self.connections = 0
        self._writers: set[asyncio.StreamWriter] = set()
        self._released = asyncio.Event()

    def _authorized(self, head: bytes) -> bool:
        if self.expected_token is None:
            return True
        expected = f"Proxy-Authorization: Basic {self.expected_token}\r\n".encode()
        return expected in head

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        self.connections += 1
        try:
            try:
                head = await reader.readuntil(b"\r\n\r\n")
            except (asyncio.IncompleteReadError, ConnectionError):
                return
            self.requests.append(head)

            if not self._authorized(head):
                writer.write(AUTH_REQUIRED)
                await writer.drain()
                return

            if head.startswith(b"CONNECT"):
                await self._handle_connect(head, reader, writer)
            elif self.http_response is None:
                await self._released.wait()
            else:
                writer.write(self.http_response)
                await writer.drain()
                if not self.close_after_response:
                    await reader.read()
        except ConnectionError:
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    async def _handle_connect(self, head: bytes, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.connect_response is None:
            await self._released.wait()
            return
        writer.write(self.connect_response)
        await writer.drain()
        if b"200" not in self.connect_response:
            return

        if self.tunnel == "echo":
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.tunnel_bytes.extend(data)
                writer.write(data)
                await writer.drain()
            return

        if self.tunnel == "hold":
            while data := await reader.read(65536):
                self.tunnel_bytes.extend(data)
            await self._released.wait()
            return

        host, _, port = head.split()[1].decode().rpartition(":")
        target_reader, target_writer = await asyncio.open_connection(host, int(port))

        async def pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
            try:
                while data := await src.read(65536):
                    dst.write(data)
                    await dst.drain()
                if dst.can_write_eof():
                    dst.write_eof()
            except (ConnectionError, OSError):
                pass

        try:
            await asyncio.gather(pipe(reader, target_writer), pipe(target_reader, writer))
        finally:
            target_writer.close()

    def close_all(self) -> None:
        self._released.set()
        for writer in list(self._writers):
            writer.close()


@pytest.fixture
async def upstream():
    fake = FakeUpstream()
    server = await asyncio.start_server(fake.handle, "127.0.0.1", 0)
    fake.port = server.sockets[0].getsockname()[1]
    try:
        yield fake
    finally:
        server.close()
        fake.close_all()
        await asyncio.wait_for(server.wait_closed(), timeout=5)


@pytest.fixture
def make_config(upstream):
    def _make(**overrides) -> ProxyConfig:
        values = dict(
            local_host="127.0.0.1",
            local_port=0,
            proxy_host="127.0.0.1",
            proxy_port=upstream.port,
            proxy_user=USER,
            proxy_password=PASSWORD,
            accept_poll_interval=0.05,
            shutdown_grace_period=0.5,
            upstream_timeout=5.0,
        )
        values.update(overrides)
        return ProxyConfig(**values)

    return _make


async def _start_proxy(config: ProxyConfig):
    server = ProxyServer(config, asyncio.Event())
    await server.start()
    task = asyncio.create_task(server.serve())
    return server, task


@pytest.fixture
async def start_proxy():
    """Factory starting a ProxyServer for a config; all are shut down after the test."""
    running: list[tuple[ProxyServer, asyncio.Task]] = []

    async def _start(config: ProxyConfig) -> ProxyServer:
        server, task = await _start_proxy(config)
        running.append((server, task))
        return server

    yield _start

    for server, task in running:
        server.shutdown.set()
        await asyncio.wait_for(task, timeout=5)


@pytest.fixture
async def proxy(make_config, start_proxy):
    return await start_proxy(make_config())


async def open_client(server: ProxyServer) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection("127.0.0.1", server.port)


async def read_all(reader: asyncio.StreamReader, timeout: float = 5) -> bytes:
    return await asyncio.wait_for(reader.read(), timeout=timeout)
