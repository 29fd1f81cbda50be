"""
gateway.py – persistent duplex link to the venue’s execution client
===================================================================

Server mode (default): listen on LISTEN_HOST:LISTEN_PORT, one task per
connection.  If the port is already taken the gateway falls back to
client mode against localhost.  Client mode (VENUE_HOST set): connect
out and reconnect forever with the shared exponential backoff.

The read loop only frames, decodes and hands messages to `handler`;
heartbeats are answered inline.  Nothing here waits on inference,
persistence or broadcast.
"""

from __future__ import annotations

import asyncio
import errno
import time
from typing import Awaitable, Callable, Optional, Set

from shared.config import ConfigStore
from shared.errors import ProtocolError
from shared.logging import get_logger
from shared.retry import RetryPolicy

from .protocol import Heartbeat, InboundMessage, decode_line, heartbeat_reply

log = get_logger("trade_executor.gateway")

LINE_LIMIT = 1 << 20
Handler = Callable[[InboundMessage], Awaitable[None]]


class VenueGateway:
    def __init__(self, config: ConfigStore, handler: Handler,
                 retry: Optional[RetryPolicy] = None):
        self._config = config
        self._handler = handler
        self._retry = retry or RetryPolicy.from_config(config.current, attempts=0)
        self._writers: Set[asyncio.StreamWriter] = set()
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self.last_heartbeat: Optional[float] = None
        self.received = 0
        self.rejected = 0

    @property
    def connected(self) -> bool:
        return bool(self._writers)

    # ─── lifecycle ────────────────────────────────────────────────────
    async def start(self) -> None:
        cfg = self._config.current
        if cfg.client_mode:
            self._spawn(self._client_loop(cfg.venue_host, cfg.venue_port))
        else:
            try:
                self._server = await asyncio.start_server(
                    self._on_connection, cfg.listen_host, cfg.listen_port, limit=LINE_LIMIT)
                log.info("listening for venue on %s:%d", cfg.listen_host, cfg.listen_port)
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE:
                    raise
                log.warning("port %d in use – connecting as client instead", cfg.listen_port)
                self._spawn(self._client_loop("127.0.0.1", cfg.listen_port))
        self._spawn(self._watchdog())

    async def close(self) -> None:
        self._closing = True
        for w in list(self._writers):
            w.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        for t in list(self._tasks):
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ─── outbound ─────────────────────────────────────────────────────
    async def send(self, data: bytes) -> None:
        if not self._writers:
            raise ConnectionError("no venue connected")
        for w in list(self._writers):
            w.write(data)
            await w.drain()

    # ─── inbound ──────────────────────────────────────────────────────
    async def _on_connection(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        await self._serve(reader, writer)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        self._writers.add(writer)
        log.info("venue connected %s", peer)
        try:
            await self._read_loop(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            log.warning("venue connection %s dropped – %s", peer, exc)
        finally:
            self._writers.discard(writer)
            writer.close()
            log.info("venue disconnected %s", peer)

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        stale = self._config.current.stale_after_sec
        while True:
            try:
                raw = await reader.readline()
            except (asyncio.LimitOverrunError, ValueError) as exc:
                self.rejected += 1
                log.warning("oversized line skipped – %s", exc)
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace")
            if not line.strip():
                continue
            try:
                msg = decode_line(line, stale_after_sec=stale)
            except ProtocolError as exc:
                self.rejected += 1
                log.warning("skipping message – %s", exc)
                continue
            self.received += 1
            if isinstance(msg, Heartbeat):
                self.last_heartbeat = time.monotonic()
                writer.write(heartbeat_reply())
                await writer.drain()
                continue
            await self._handler(msg)

    async def _client_loop(self, host: str, port: int) -> None:
        delays = self._retry.delays()
        while not self._closing:
            try:
                reader, writer = await asyncio.open_connection(host, port, limit=LINE_LIMIT)
            except OSError as exc:
                delay = next(delays, self._retry.backoff_max_secs)
                log.warning("venue %s:%d unreachable: %s (retry in %.1fs)", host, port, exc, delay)
                await asyncio.sleep(delay)
                continue
            delays = self._retry.delays()
            await self._serve(reader, writer)
            if not self._closing:
                await asyncio.sleep(self._retry.backoff_initial_secs)

    async def _watchdog(self) -> None:
        while True:
            timeout = self._config.current.heartbeat_timeout_sec
            await asyncio.sleep(timeout)
            if self.connected and self.last_heartbeat is not None \
                    and time.monotonic() - self.last_heartbeat > timeout:
                log.warning("no venue heartbeat for %.0fs", time.monotonic() - self.last_heartbeat)
