"""HTTP egress proxy: the enclave side speaks HTTP, the host side opens TCP connections."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import socket
import struct
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Protocol
from urllib.parse import urlsplit

from . import vsock
from .utils import spawn

log = logging.getLogger(__name__)

# A special hostname that refers to the localhost outside of the enclave.
OUTSIDE_HOST = "host"

_CHUNK = 64 * 1024
_LEN = struct.Struct("<H")


class EgressPolicy(Protocol):
    def is_host_allowed(self, host: str) -> bool: ...


async def _send_framed(writer: Any, payload: Any) -> None:
    msg = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    if len(msg) > 0xFFFF:
        raise ValueError("message too long to frame")
    writer.write(_LEN.pack(len(msg)) + msg)
    await writer.drain()


async def _recv_framed(reader: asyncio.StreamReader) -> Any:
    (length,) = _LEN.unpack(await reader.readexactly(_LEN.size))
    return json.loads(await reader.readexactly(length))


@dataclass
class ConnectRequest:
    """Asks the host to open a TCP connection to ``host:port``."""

    host: str
    port: int

    async def send(self, writer: Any) -> None:
        await _send_framed(writer, {"host": self.host, "port": self.port})

    @classmethod
    async def recv(cls, reader: asyncio.StreamReader) -> ConnectRequest:
        data = await _recv_framed(reader)
        try:
            host, port = data["host"], data["port"]
        except (KeyError, TypeError):
            raise ValueError("malformed connect request") from None
        if not isinstance(host, str) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
            raise ValueError("malformed connect request")
        return cls(host, port)


@dataclass
class ConnectResponse:
    """The host's answer to a connect request; ``os_code`` is None on success."""

    os_code: int | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.os_code is None

    @classmethod
    def failed(cls, err: OSError) -> ConnectResponse:
        return cls(os_code=err.errno or 0, message=str(err))

    async def send(self, writer: Any) -> None:
        if self.ok:
            await _send_framed(writer, "Ok")
        else:
            await _send_framed(writer, {"Err": {"os_code": self.os_code, "message": self.message}})

    @classmethod
    async def recv(cls, reader: asyncio.StreamReader) -> ConnectResponse:
        data = await _recv_framed(reader)
        if data == "Ok":
            return cls()
        try:
            err = data["Err"]
            return cls(os_code=int(err["os_code"]), message=str(err["message"]))
        except (KeyError, TypeError, ValueError):
            raise ValueError("malformed connect response") from None


@dataclass
class Response:
    """A simple HTTP/1.1 response generated by the proxy itself."""

    status: int
    body: bytes = b""
    headers: list[tuple[str, str]] = field(default_factory=list)

    def encode(self) -> bytes:
        reason = HTTPStatus(self.status).phrase
        lines = [f"HTTP/1.1 {self.status} {reason}"]
        lines += [f"{name}: {value}" for name, value in self.headers]
        lines.append(f"Content-Length: {len(self.body)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + self.body


def err_resp(status: int, msg: str) -> Response:
    return Response(status, msg.encode("utf-8"))


def bad_request(msg: str) -> Response:
    return err_resp(HTTPStatus.BAD_REQUEST, msg)


def blocked() -> Response:
    return err_resp(HTTPStatus.UNAUTHORIZED, "blocked by egress security policy")


def is_empty(path: str | None, query: str | None) -> bool:
    """True when a request target has no path beyond "/" and no query."""
    if path is None:
        return True
    if path != "/":
        return False
    return not query


async def remote_connect(
    egress_port: int, host: str, port: int
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to the host over vsock and ask it to connect to ``host:port``."""
    reader, writer = await vsock.connect(vsock.VMADDR_CID_HOST, egress_port)
    try:
        log.debug(
            "Connected to vsock %d:%d, sending connect request", vsock.VMADDR_CID_HOST, egress_port
        )
        await ConnectRequest(host, port).send(writer)
        log.debug("Sent request to connect to %s:%d", host, port)
        resp = await ConnectResponse.recv(reader)
    except BaseException:
        writer.close()
        raise
    if not resp.ok:
        writer.close()
        raise ConnectionError(f"os_err: {resp.os_code}: {resp.message}")
    return reader, writer


# --- HTTP plumbing ---------------------------------------------------------


def _header(headers: list[tuple[str, str]], name: str) -> str | None:
    lname = name.lower()
    for key, value in headers:
        if key.lower() == lname:
            return value
    return None


def _without(headers: list[tuple[str, str]], *names: str) -> list[tuple[str, str]]:
    drop = {n.lower() for n in names}
    return [(k, v) for k, v in headers if k.lower() not in drop]


async def _read_head(reader: asyncio.StreamReader) -> tuple[str, list[tuple[str, str]]] | None:
    start = await reader.readline()
    while start in (b"\r\n", b"\n"):
        start = await reader.readline()
    if not start:
        return None
    headers = []
    while True:
        line = await reader.readline()
        if not line:
            raise ConnectionError("connection closed in headers")
        if line in (b"\r\n", b"\n"):
            break
        name, sep, value = line.decode("latin-1").partition(":")
        if not sep:
            raise ValueError("malformed header line")
        headers.append((name.strip(), value.strip()))
    return start.decode("latin-1").rstrip("\r\n"), headers


async def _read_chunked(reader: asyncio.StreamReader) -> bytes:
    body = bytearray()
    while True:
        size = int((await reader.readline()).split(b";")[0].strip(), 16)
        if size == 0:
            while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                pass
            return bytes(body)
        body += await reader.readexactly(size)
        await reader.readline()


async def _copy_chunked(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while True:
        line = await reader.readline()
        writer.write(line)
        size = int(line.split(b";")[0].strip(), 16)
        if size == 0:
            while True:
                trailer = await reader.readline()
                writer.write(trailer)
                if trailer in (b"\r\n", b"\n", b""):
                    break
            await writer.drain()
            return
        writer.write(await reader.readexactly(size + 2))
        await writer.drain()


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while chunk := await reader.read(_CHUNK):
            writer.write(chunk)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (OSError, RuntimeError):
        pass


async def _copy_bidirectional(
    a: tuple[asyncio.StreamReader, asyncio.StreamWriter],
    b: tuple[asyncio.StreamReader, asyncio.StreamWriter],
) -> None:
    try:
        await asyncio.gather(_pipe(a[0], b[1]), _pipe(b[0], a[1]))
    finally:
        for w in (a[1], b[1]):
            w.close()


async def _relay_response(
    method: str, upstream: asyncio.StreamReader, client: asyncio.StreamWriter
) -> bool:
    """Forward one response; return True if the client connection can stay open."""
    head = await _read_head(upstream)
    if head is None:
        raise ConnectionError("upstream closed before responding")
    status_line, headers = head
    parts = status_line.split(" ", 2)
    status = int(parts[1]) if len(parts) > 1 else 0
    raw = status_line + "\r\n" + "".join(f"{k}: {v}\r\n" for k, v in headers) + "\r\n"
    client.write(raw.encode("latin-1"))
    if method == "HEAD" or 100 <= status < 200 or status in (204, 304):
        await client.drain()
        return True
    te = _header(headers, "Transfer-Encoding")
    length = _header(headers, "Content-Length")
    if te and "chunked" in te.lower():
        await _copy_chunked(upstream, client)
        return True
    if length is not None:
        remaining = int(length)
        while remaining:
            chunk = await upstream.read(min(remaining, _CHUNK))
            if not chunk:
                raise ConnectionError("upstream closed mid-body")
            client.write(chunk)
            remaining -= len(chunk)
            await client.drain()
        return True
    while chunk := await upstream.read(_CHUNK):
        client.write(chunk)
        await client.drain()
    return False


class EnclaveHttpProxy:
    """HTTP proxy listening on localhost inside the enclave."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    @property
    def port(self) -> int:
        return self._sock.getsockname()[1]

    @classmethod
    async def bind(cls, port: int) -> EnclaveHttpProxy:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", port))
            sock.listen()
            sock.setblocking(False)
        except BaseException:
            sock.close()
            raise
        return cls(sock)

    async def serve(self, egress_port: int, egress_policy: EgressPolicy) -> None:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self._service_conn(reader, writer, egress_port, egress_policy)

        server = await asyncio.start_server(handle, sock=self._sock)
        async with server:
            await server.serve_forever()

    @staticmethod
    async def _service_conn(
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        egress_port: int,
        policy: EgressPolicy,
    ) -> None:
        try:
            while True:
                head = await _read_head(reader)
                if head is None:
                    break
                start, headers = head
                try:
                    method, target, _version = start.split(" ", 2)
                except ValueError:
                    writer.write(bad_request("malformed request line").encode())
                    break
                if method == "CONNECT":
                    await _handle_connect(target, reader, writer, egress_port, policy)
                    return
                te = _header(headers, "Transfer-Encoding")
                if te and "chunked" in te.lower():
                    body = await _read_chunked(reader)
                    headers = _without(headers, "Transfer-Encoding", "Content-Length")
                    headers.append(("Content-Length", str(len(body))))
                else:
                    body = await reader.readexactly(int(_header(headers, "Content-Length") or 0))
                keep = await _handle_request(
                    method, target, headers, body, writer, egress_port, policy
                )
                conn = (_header(headers, "Connection") or "").lower()
                if not keep or conn == "close":
                    break
            await writer.drain()
        except Exception as err:  # noqa: BLE001
            log.error("Failed to serve connection: %s", err)
        finally:
            writer.close()


async def _handle_connect(
    target: str,
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    egress_port: int,
    policy: EgressPolicy,
) -> None:
    host, sep, port_text = target.rpartition(":")
    if not target or "/" in target:
        msg = f"CONNECT host is not a socket addr: {target!r}"
        log.error("%s", msg)
        writer.write(bad_request(msg).encode())
        return
    if not sep or not port_text.isdigit() or not host:
        msg = "CONNECT address is missing a port"
        log.error("%s", msg)
        writer.write(bad_request(msg).encode())
        return
    host = host.strip("[]")
    if not policy.is_host_allowed(host):
        writer.write(blocked().encode())
        return
    port = int(port_text)
    log.debug("Handling CONNECT to %s:%d", host, port)
    try:
        remote = await remote_connect(egress_port, host, port)
    except Exception as err:  # noqa: BLE001
        writer.write(err_resp(HTTPStatus.SERVICE_UNAVAILABLE, str(err)).encode())
        return
    writer.write(b"HTTP/1.1 200 OK\r\n\r\n")
    await writer.drain()
    await _copy_bidirectional((reader, writer), remote)


async def _handle_request(
    method: str,
    target: str,
    headers: list[tuple[str, str]],
    body: bytes,
    writer: asyncio.StreamWriter,
    egress_port: int,
    policy: EgressPolicy,
) -> bool:
    url = urlsplit(target)
    host = url.hostname
    if not host:
        writer.write(bad_request("URI is missing a host").encode())
        return True
    try:
        explicit_port = url.port
    except ValueError:
        writer.write(bad_request("invalid port in URI").encode())
        return True
    port = explicit_port or 80
    if not policy.is_host_allowed(host):
        writer.write(blocked().encode())
        return True
    try:
        up_reader, up_writer = await remote_connect(egress_port, host, port)
    except Exception as err:  # noqa: BLE001
        writer.write(err_resp(HTTPStatus.SERVICE_UNAVAILABLE, str(err)).encode())
        return True
    try:
        host_hdr = f"{host}:{explicit_port}" if explicit_port is not None else host
        headers = _without(headers, "Host") + [("Host", host_hdr)]
        if method == "OPTIONS" and is_empty(url.path or "/", url.query):
            pq = "*"
        else:
            pq = (url.path or "/") + (f"?{url.query}" if url.query else "")
        head = f"{method} {pq} HTTP/1.1\r\n" + "".join(f"{k}: {v}\r\n" for k, v in headers)
        up_writer.write((head + "\r\n").encode("latin-1") + body)
        await up_writer.drain()
        return await _relay_response(method, up_reader, writer)
    finally:
        up_writer.close()


class HostHttpProxy:
    """Host side: accepts vsock connections and dials the requested TCP address."""

    def __init__(self, incoming: Any) -> None:
        self._incoming = incoming

    @classmethod
    def bind(cls, egress_port: int) -> HostHttpProxy:
        return cls(vsock.serve(egress_port))

    async def serve(self) -> None:
        async for reader, writer in self._incoming:
            spawn("egress host conn", self._run_conn(reader, writer))

    @classmethod
    async def _run_conn(cls, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await cls._service_conn(reader, writer)
        except Exception as err:  # noqa: BLE001
            log.error("%s", err)
        finally:
            writer.close()

    @staticmethod
    async def _service_conn(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await ConnectRequest.recv(reader)
        host = "127.0.0.1" if req.host.lower() == OUTSIDE_HOST else req.host
        try:
            remote = await asyncio.open_connection(host, req.port)
        except OSError as err:
            await ConnectResponse.failed(err).send(writer)
            return
        await ConnectResponse().send(writer)
        log.debug("Connected to %s:%d, starting to proxy bytes", host, req.port)
        with contextlib.suppress(Exception):
            await _copy_bidirectional((reader, writer), remote)