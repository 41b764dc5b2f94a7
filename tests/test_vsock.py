import asyncio
import datetime
import socket

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from enclaver import tls, vsock


def _server_context(tmp_path):
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test.local")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName("test.local")]), critical=False
        )
        .sign(key, hashes.SHA256())
    )
    key_path = tmp_path / "test.key"
    cert_path = tmp_path / "test.crt"
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return tls.load_server_config(key_path, cert_path)


def _tcp_listener():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    listener.setblocking(False)
    return listener


async def _roundtrip(server_conn, client_conn, payload):
    server_reader, server_writer = server_conn
    client_reader, client_writer = client_conn
    client_writer.write(payload)
    await client_writer.drain()
    server_writer.write(await server_reader.readexactly(len(payload)))
    await server_writer.drain()
    data = await client_reader.readexactly(len(payload))
    client_writer.close()
    server_writer.close()
    return data


@pytest.mark.asyncio
async def test_accept_plain_stream():
    listener = _tcp_listener()
    port = listener.getsockname()[1]
    incoming = vsock._accept_streams(listener)
    server_conn, client_conn = await asyncio.gather(
        anext(incoming), asyncio.open_connection("127.0.0.1", port)
    )
    payload = bytes(range(256)) * 16
    assert await _roundtrip(server_conn, client_conn, payload) == payload
    await incoming.aclose()


@pytest.mark.asyncio
async def test_closing_iterator_closes_listener():
    listener = _tcp_listener()
    port = listener.getsockname()[1]
    incoming = vsock._accept_streams(listener)
    server_conn, client_conn = await asyncio.gather(
        anext(incoming), asyncio.open_connection("127.0.0.1", port)
    )
    await incoming.aclose()
    assert listener.fileno() == -1
    server_conn[1].close()
    client_conn[1].close()


@pytest.mark.asyncio
async def test_accept_tls_stream(tmp_path):
    listener = _tcp_listener()
    port = listener.getsockname()[1]
    incoming = vsock._accept_streams(listener, _server_context(tmp_path))
    client_context = tls.load_insecure_client_config()
    server_conn, client_conn = await asyncio.gather(
        anext(incoming),
        asyncio.open_connection(
            "127.0.0.1", port, ssl=client_context, server_hostname="test.local"
        ),
    )
    payload = b"enclave" * 1000
    assert await _roundtrip(server_conn, client_conn, payload) == payload
    await incoming.aclose()


@pytest.mark.asyncio
async def test_failed_handshake_is_skipped(tmp_path):
    listener = _tcp_listener()
    port = listener.getsockname()[1]
    incoming = vsock._accept_streams(listener, _server_context(tmp_path))

    plain_reader, plain_writer = await asyncio.open_connection("127.0.0.1", port)
    plain_writer.write(b"this is not a tls handshake\r\n\r\n")
    await plain_writer.drain()
    plain_writer.close()

    client_context = tls.load_insecure_client_config()
    server_conn, client_conn = await asyncio.wait_for(
        asyncio.gather(
            anext(incoming),
            asyncio.open_connection(
                "127.0.0.1", port, ssl=client_context, server_hostname="test.local"
            ),
        ),
        timeout=10,
    )
    assert await _roundtrip(server_conn, client_conn, b"ping") == b"ping"
    await incoming.aclose()


def test_serve_without_vsock_support(monkeypatch):
    monkeypatch.delattr(socket, "AF_VSOCK", raising=False)
    with pytest.raises(OSError, match="vsock is not supported"):
        vsock.serve(5000)
    with pytest.raises(OSError, match="vsock is not supported"):
        vsock.tls_serve(5000, tls.load_insecure_client_config())


@pytest.mark.asyncio
async def test_connect_without_vsock_support(monkeypatch):
    monkeypatch.delattr(socket, "AF_VSOCK", raising=False)
    with pytest.raises(OSError, match="vsock is not supported"):
        await vsock.connect(vsock.VMADDR_CID_HOST, 5000)
    with pytest.raises(OSError, match="vsock is not supported"):
        await vsock.tls_connect(
            vsock.VMADDR_CID_HOST, 5000, "test.local", tls.load_insecure_client_config()
        )