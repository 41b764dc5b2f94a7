"""Listening on and connecting to vsock ports, plain or over TLS."""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
import ssl
from collections.abc import AsyncIterator

log = logging.getLogger(__name__)

VMADDR_CID_ANY = 0xFFFFFFFF
VMADDR_CID_LOCAL = 1
VMADDR_CID_HOST = 2

Connection = tuple[asyncio.StreamReader, asyncio.StreamWriter]


def _vsock_socket() -> socket.socket:
    family = getattr(socket, "AF_VSOCK", None)
    if family is None:
        raise OSError(errno.EAFNOSUPPORT, "vsock is not supported on this platform")
    return socket.socket(family, socket.SOCK_STREAM)


def _listen(port: int) -> socket.socket:
    sock = _vsock_socket()
    try:
        sock.bind((VMADDR_CID_ANY, port))
        sock.listen()
        sock.setblocking(False)
    except BaseException:
        sock.close()
        raise
    return sock


async def _connect_socket(cid: int, port: int) -> socket.socket:
    sock = _vsock_socket()
    sock.setblocking(False)
    try:
        await asyncio.get_running_loop().sock_connect(sock, (cid, port))
    except BaseException:
        sock.close()
        raise
    return sock


async def _open_accepted(sock: socket.socket, tls_config: ssl.SSLContext | None) -> Connection:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    transport, _ = await loop.connect_accepted_socket(lambda: protocol, sock, ssl=tls_config)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


async def _accept_streams(
    listener: socket.socket, tls_config: ssl.SSLContext | None = None
) -> AsyncIterator[Connection]:
    """Yield accepted connections from a listening socket, skipping failures."""
    loop = asyncio.get_running_loop()
    port = listener.getsockname()[1]
    try:
        while True:
            try:
                sock, _ = await loop.sock_accept(listener)
            except OSError as err:
                log.error("Failed to accept a vsock: %s", err)
                continue
            log.debug("Connection accepted on port %s", port)
            try:
                conn = await _open_accepted(sock, tls_config)
            except (OSError, asyncio.TimeoutError) as err:
                sock.close()
                log.error("TLS handshake failed: %s", err)
                continue
            yield conn
    finally:
        listener.close()


async def connect(cid: int, port: int) -> Connection:
    """Open a plain stream to the given vsock address."""
    sock = await _connect_socket(cid, port)
    return await asyncio.open_connection(sock=sock)


def serve(port: int) -> AsyncIterator[Connection]:
    """Listen on a vsock port and return an async iterator of connections."""
    listener = _listen(port)
    log.info("Listening on vsock port %d", port)
    return _accept_streams(listener)


def tls_serve(port: int, tls_config: ssl.SSLContext) -> AsyncIterator[Connection]:
    """Listen on a vsock port and return an async iterator of TLS connections."""
    listener = _listen(port)
    log.info("Listening on TLS vsock port %d", port)
    return _accept_streams(listener, tls_config)


async def tls_connect(
    cid: int, port: int, name: str, tls_config: ssl.SSLContext
) -> Connection:
    """Open a TLS stream to the given vsock address, verifying ``name``."""
    sock = await _connect_socket(cid, port)
    try:
        return await asyncio.open_connection(sock=sock, ssl=tls_config, server_hostname=name)
    except BaseException:
        sock.close()
        raise