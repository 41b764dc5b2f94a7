"""Ingress proxying between host TCP ports and the application inside the enclave."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import ssl
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable

from . import vsock
from .utils import spawn

log = logging.getLogger(__name__)

_CHUNK = 64 * 1024

Stream = tuple[asyncio.StreamReader, asyncio.StreamWriter]
Dialer = Callable[[int, int], Awaitable[Stream]]


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while chunk := await reader.read(_CHUNK):
            writer.write(chunk)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (OSError, RuntimeError):
        pass


async def _copy_bidirectional(a: Stream, b: Stream) -> None:
    try:
        await asyncio.gather(_pipe(a[0], b[1]), _pipe(b[0], a[1]))
    finally:
        for writer in (a[1], b[1]):
            writer.close()


async def _next(incoming: AsyncIterator[Stream]) -> Stream:
    return await incoming.__anext__()


class EnclaveProxy:
    """Enclave side: takes connections from a vsock and relays them to the app on localhost.

    With TLS the vsock connection is terminated here and the app sees plain TCP.
    """

    def __init__(self, incoming: AsyncIterable[Stream], port: int) -> None:
        self._incoming = incoming
        self.port = port

    @classmethod
    def bind(cls, port: int) -> EnclaveProxy:
        return cls(vsock.serve(port), port)

    @classmethod
    def bind_tls(cls, port: int, tls_config: ssl.SSLContext) -> EnclaveProxy:
        return cls(vsock.tls_serve(port, tls_config), port)

    async def serve(self, shutdown: asyncio.Event) -> None:
        """Relay connections until ``shutdown`` is set, then wait for open ones to end."""
        incoming = aiter(self._incoming)
        proxies: list[asyncio.Task] = []
        stop = asyncio.ensure_future(shutdown.wait())
        exhausted = False
        try:
            while True:
                if exhausted:
                    await stop
                    break
                pending = asyncio.ensure_future(_next(incoming))
                done, _ = await asyncio.wait({pending, stop}, return_when=asyncio.FIRST_COMPLETED)
                if pending in done:
                    try:
                        reader, writer = pending.result()
                    except StopAsyncIteration:
                        exhausted = True
                    else:
                        proxies.append(
                            spawn("ingress stream", self._service_conn(reader, writer, self.port))
                        )
                else:
                    pending.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await pending
                if stop in done:
                    break
        finally:
            stop.cancel()
        await asyncio.gather(*proxies, return_exceptions=True)

    @staticmethod
    async def _service_conn(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter, port: int
    ) -> None:
        target = f"127.0.0.1:{port}"
        log.debug("Connecting to %s", target)
        try:
            upstream = await asyncio.open_connection("127.0.0.1", port)
        except OSError as err:
            log.error("Connection to upstream (%s) failed: %s", target, err)
            writer.close()
            return
        log.debug("Connected to %s, proxying data", target)
        await _copy_bidirectional((reader, writer), upstream)


class HostProxy:
    """Host side: listens on a TCP port and relays raw bytes to a vsock in the enclave."""

    def __init__(self, sock: socket.socket, dial: Dialer = vsock.connect) -> None:
        self._sock = sock
        self._dial = dial

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    @classmethod
    async def bind(cls, port: int) -> HostProxy:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("0.0.0.0", port))
            sock.listen()
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return cls(sock)

    async def serve(self, target_cid: int, target_port: int) -> None:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self._service_conn(reader, writer, target_cid, target_port)

        server = await asyncio.start_server(handle, sock=self._sock)
        async with server:
            await server.serve_forever()

    async def _service_conn(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        target_cid: int,
        target_port: int,
    ) -> None:
        log.debug("Connecting to CID=%d port=%d", target_cid, target_port)
        try:
            upstream = await self._dial(target_cid, target_port)
        except OSError as err:
            log.error(
                "Connection to upstream vsock (%d:%d) failed: %s", target_cid, target_port, err
            )
            writer.close()
            return
        log.debug("Connected to %d:%d, proxying data", target_port, target_cid)
        await _copy_bidirectional(upstream, (reader, writer))