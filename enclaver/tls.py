"""Loading of TLS certificates, keys and contexts."""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import ssl

log = logging.getLogger(__name__)

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\s*(.*?)\s*-----END \1-----", re.DOTALL
)


def _pem_blocks(path: str | os.PathLike, label: bytes, error: str) -> list[bytes]:
    with open(path, "rb") as fh:
        data = fh.read()
    blocks = []
    for match in _PEM_BLOCK.finditer(data):
        if match.group(1) != label:
            continue
        body = b"".join(match.group(2).split())
        try:
            blocks.append(base64.b64decode(body, validate=True))
        except binascii.Error:
            raise ValueError(error) from None
    return blocks


def load_certs(path: str | os.PathLike) -> list[bytes]:
    """Return the DER certificates found in a PEM file."""
    return _pem_blocks(path, b"CERTIFICATE", "invalid cert")


def load_keys(path: str | os.PathLike) -> list[bytes]:
    """Return the DER PKCS#8 private keys found in a PEM file."""
    keys = _pem_blocks(path, b"PRIVATE KEY", "invalid key")
    log.info("Loaded %d TLS keys", len(keys))
    return keys


def load_server_config(key: str | os.PathLike, cert: str | os.PathLike) -> ssl.SSLContext:
    """Build a server context from a PKCS#8 key file and a certificate file."""
    certs = load_certs(cert)
    keys = load_keys(key)
    if not certs:
        raise ValueError("no certificate found")
    if not keys:
        raise ValueError("no private key found")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_NONE
    context.load_cert_chain(certfile=os.fspath(cert), keyfile=os.fspath(key))
    return context


def load_client_config(cert: str | os.PathLike) -> ssl.SSLContext:
    """Build a client context that trusts only the first certificate in the file."""
    certs = load_certs(cert)
    if not certs:
        raise ValueError("no certificate found")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_verify_locations(cadata=certs[0])
    return context


def load_insecure_client_config() -> ssl.SSLContext:
    """Build a client context that accepts any server certificate."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context