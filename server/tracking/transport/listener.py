"""Inbound socket listeners for device-initiated telemetry.

TCP: one handler task per accepted connection, newline-delimited frames,
optional ``OK``/``ERROR`` acknowledgement per frame.
UDP: one handler task per datagram, one or more newline-delimited frames
per datagram, never acknowledged.

A bad frame only costs a parse-error count: the TCP connection and the
UDP socket stay open.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog

from tracking.core.models import SOURCE_TCP, SOURCE_UDP
from tracking.core.processor import FRAME_EMPTY, FRAME_PARSE_ERROR

if TYPE_CHECKING:
    from tracking.core.processor import FrameProcessor
    from tracking.core.stats import IngestStats

log = structlog.get_logger()

ACK_OK = b"OK\n"
ACK_ERROR = b"ERROR\n"


def _format_peer(addr) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr or "")


async def _cancel_all(tasks: list[asyncio.Task]) -> None:
    current = asyncio.current_task()
    tasks = [t for t in tasks if t is not current]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


class TcpListener:
    """Connection-oriented device listener."""

    def __init__(
        self,
        processor: FrameProcessor,
        stats: IngestStats,
        *,
        host: str = "0.0.0.0",
        port: int = 8888,
        ack_frames: bool = True,
        max_frame_bytes: int = 4096,
    ) -> None:
        self._processor = processor
        self._stats = stats
        self._host = host
        self._port = port
        self._ack_frames = ack_frames
        self._max_frame_bytes = max_frame_bytes
        self._server: asyncio.Server | None = None
        self._connections: dict[asyncio.Task, asyncio.StreamWriter] = {}
        self._lifecycle = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        async with self._lifecycle:
            if self._server is not None:
                log.info("listener_already_running", transport="tcp", port=self.port)
                return
            self._server = await asyncio.start_server(
                self._handle_connection, self._host, self._port,
                limit=self._max_frame_bytes,
            )
            log.info("listener_started", transport="tcp", host=self._host, port=self.port)

    async def stop(self) -> None:
        async with self._lifecycle:
            if self._server is None:
                return
            server, self._server = self._server, None
            server.close()
            for writer in self._connections.values():
                writer.close()
            await _cancel_all(list(self._connections))
            self._connections.clear()
            await server.wait_closed()
            log.info("listener_stopped", transport="tcp")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._connections[task] = writer
        peer = _format_peer(writer.get_extra_info("peername"))
        self._stats.connection_opened()
        log.info("device_connected", transport="tcp", peer=peer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Over-long line; the reader has already discarded it.
                    self._stats.record_frame(SOURCE_TCP)
                    self._stats.record_parse_error(SOURCE_TCP)
                    log.warning("frame_too_long", transport="tcp", peer=peer,
                                limit=self._max_frame_bytes)
                    await self._ack(writer, ok=False)
                    continue
                if not line:
                    break
                outcome = await self._processor.process_frame(line, SOURCE_TCP, peer)
                if outcome != FRAME_EMPTY:
                    await self._ack(writer, ok=outcome != FRAME_PARSE_ERROR)
        except ConnectionError as e:
            log.info("device_connection_error", transport="tcp", peer=peer, error=str(e))
        finally:
            self._connections.pop(task, None)
            self._stats.connection_closed()
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()
            log.info("device_disconnected", transport="tcp", peer=peer)

    async def _ack(self, writer: asyncio.StreamWriter, *, ok: bool) -> None:
        if not self._ack_frames or writer.is_closing():
            return
        writer.write(ACK_OK if ok else ACK_ERROR)
        await writer.drain()


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: UdpListener) -> None:
        self._listener = listener

    def datagram_received(self, data: bytes, addr) -> None:
        self._listener.on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        log.warning("udp_socket_error", error=str(exc))


class UdpListener:
    """Connectionless beacon listener."""

    def __init__(
        self,
        processor: FrameProcessor,
        stats: IngestStats,
        *,
        host: str = "0.0.0.0",
        port: int = 8889,
    ) -> None:
        self._processor = processor
        self._stats = stats
        self._host = host
        self._port = port
        self._transport: asyncio.DatagramTransport | None = None
        self._tasks: set[asyncio.Task] = set()
        self._lifecycle = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._transport is not None

    @property
    def port(self) -> int | None:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[1]

    async def start(self) -> None:
        async with self._lifecycle:
            if self._transport is not None:
                log.info("listener_already_running", transport="udp", port=self.port)
                return
            loop = asyncio.get_running_loop()
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramProtocol(self),
                local_addr=(self._host, self._port),
            )
            log.info("listener_started", transport="udp", host=self._host, port=self.port)

    async def stop(self) -> None:
        async with self._lifecycle:
            if self._transport is None:
                return
            transport, self._transport = self._transport, None
            transport.close()
            await _cancel_all(list(self._tasks))
            self._tasks.clear()
            log.info("listener_stopped", transport="udp")

    def on_datagram(self, data: bytes, addr) -> None:
        task = asyncio.get_running_loop().create_task(self._handle_datagram(data, _format_peer(addr)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_datagram(self, data: bytes, peer: str) -> None:
        for line in data.splitlines():
            await self._processor.process_frame(line, SOURCE_UDP, peer)


class SocketListener:
    """The TCP/UDP listener pair, started and stopped together."""

    def __init__(self, tcp: TcpListener, udp: UdpListener) -> None:
        self.tcp = tcp
        self.udp = udp

    async def start(self) -> None:
        await self.tcp.start()
        await self.udp.start()

    async def stop(self) -> None:
        await self.tcp.stop()
        await self.udp.stop()

    def status(self) -> dict:
        return {
            "tcp": {
                "running": self.tcp.running,
                "port": self.tcp.port,
                "connections": self.tcp.connection_count,
            },
            "udp": {
                "running": self.udp.running,
                "port": self.udp.port,
            },
        }
