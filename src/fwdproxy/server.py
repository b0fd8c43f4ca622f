"""Listening socket, accept loop and shutdown coordination."""

from __future__ import annotations

import asyncio
import signal
import socket

import structlog

from .auth import Credential
from .config import ProxyConfig
from .errors import BindError
from .handler import ConnectionHandler

log = structlog.get_logger()

LISTEN_BACKLOG = 128


def _format_peer(addr: tuple) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class ProxyServer:
    """Accepts client connections and hands each one to its own task.

    The accept loop waits at most ``accept_poll_interval`` for a connection
    before re-checking ``shutdown``. Once shutdown is set, the listener is
    closed and in-flight connections get ``shutdown_grace_period`` to finish.
    They are not cancelled.
    """

    def __init__(self, config: ProxyConfig, shutdown: asyncio.Event | None = None) -> None:
        self.config = config
        self.shutdown = shutdown if shutdown is not None else asyncio.Event()
        self.credential = Credential.from_config(config)
        self.handler = ConnectionHandler(config, self.credential)
        self.connection_count = 0
        self._sock: socket.socket | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def address(self) -> tuple:
        """The bound (host, port, ...) of the listening socket."""
        if self._sock is None:
            raise RuntimeError("Server not started")
        return self._sock.getsockname()

    @property
    def port(self) -> int:
        return self.address[1]

    @property
    def active_connections(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        """Bind the listening socket. Raises BindError."""
        loop = asyncio.get_running_loop()
        addr = self.config.listen_address
        try:
            infos = await loop.getaddrinfo(
                self.config.local_host,
                self.config.local_port,
                type=socket.SOCK_STREAM,
                flags=socket.AI_PASSIVE,
            )
            family, _, _, _, sockaddr = infos[0]
            sock = socket.create_server(sockaddr, family=family, backlog=LISTEN_BACKLOG)
        except OSError as exc:
            log.error("bind_failed", address=addr, error=str(exc))
            raise BindError(addr, str(exc)) from exc

        sock.setblocking(False)
        self._sock = sock
        log.info("server_listening", address=_format_peer(self.address))

    async def serve(self) -> None:
        """Run the accept loop until shutdown, then drain."""
        if self._sock is None:
            raise RuntimeError("Server not started")
        loop = asyncio.get_running_loop()

        while not self.shutdown.is_set():
            try:
                conn, addr = await asyncio.wait_for(
                    loop.sock_accept(self._sock),
                    timeout=self.config.accept_poll_interval,
                )
            except asyncio.TimeoutError:
                continue
            except OSError as exc:
                log.error("accept_failed", error=str(exc))
                await asyncio.sleep(self.config.accept_error_backoff)
                continue

            self.connection_count += 1
            peer = _format_peer(addr)
            log.debug("connection_accepted", conn_id=self.connection_count, peer=peer)
            task = asyncio.create_task(self.handler(conn, peer, self.connection_count))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        await self._drain()

    async def _drain(self) -> None:
        log.info("server_shutting_down", in_flight=len(self._tasks))
        if self._sock is not None:
            self._sock.close()
            self._sock = None

        if self._tasks:
            _, pending = await asyncio.wait(
                set(self._tasks), timeout=self.config.shutdown_grace_period
            )
            if pending:
                log.warning("shutdown_grace_expired", still_running=len(pending))
        log.info("server_shutdown_complete", total_connections=self.connection_count)

    async def run(self) -> None:
        self._log_startup()
        await self.start()
        await self.serve()

    def _log_startup(self) -> None:
        config = self.config
        log.info(
            "proxy_starting",
            listen=config.listen_address,
            upstream=config.upstream_address,
            auth=config.has_credentials,
        )
        log.debug("proxy_config", config=config.model_dump(mode="json"))


def _on_signal(sig: signal.Signals, shutdown: asyncio.Event) -> None:
    log.info("signal_received", signal=sig.name)
    shutdown.set()


def run_server(config: ProxyConfig) -> None:
    """Run the proxy until SIGINT or SIGTERM (blocking). Raises BindError."""

    async def _run() -> None:
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig, shutdown)
        await ProxyServer(config, shutdown).run()

    asyncio.run(_run())
