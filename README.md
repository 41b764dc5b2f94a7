# enclaver

Asyncio building blocks for running an application inside an enclave and
talking to it from the host over vsock sockets. Only the standard library is
used.

## Modules

### `enclaver.vsock`

- `serve(port)` listens on a vsock port (any CID) and returns an async
  iterator of `(StreamReader, StreamWriter)` pairs; failed accepts are logged
  and skipped.
- `tls_serve(port, tls_config)` does the same, performing a TLS handshake with
  the given `ssl.SSLContext`; failed handshakes are logged and skipped.
- `connect(cid, port)` and `tls_connect(cid, port, name, tls_config)` open a
  stream to a vsock address, plain or over TLS (verifying `name`).
- Constants `VMADDR_CID_ANY`, `VMADDR_CID_LOCAL`, `VMADDR_CID_HOST`.

If the platform has no `AF_VSOCK`, these raise `OSError`.

### `enclaver.tls`

- `load_certs(path)` / `load_keys(path)` return the DER bytes of the
  `CERTIFICATE` / PKCS#8 `PRIVATE KEY` blocks in a PEM file; malformed base64
  raises `ValueError("invalid cert")` / `ValueError("invalid key")`.
- `load_server_config(key, cert)` builds a TLS 1.2+ server `ssl.SSLContext`
  with no client authentication.
- `load_client_config(cert)` builds a client context that trusts only the
  first certificate in the file.
- `load_insecure_client_config()` builds a client context that accepts any
  server certificate and skips host-name checks.

### `enclaver.ingress`

- `HostProxy.bind(port)` listens on TCP `0.0.0.0:port`;
  `HostProxy.serve(target_cid, target_port)` forwards each connection's raw
  bytes to the vsock address.
- `EnclaveProxy.bind(port)` / `EnclaveProxy.bind_tls(port, tls_config)`
  accept vsock (optionally TLS-terminated) connections;
  `EnclaveProxy.serve(shutdown)` relays each to `127.0.0.1:port` until the
  `asyncio.Event` `shutdown` is set, then waits for open relays to finish.

### `enclaver.egress_http`

- `EnclaveHttpProxy.bind(port)` listens on `127.0.0.1:port`;
  `EnclaveHttpProxy.serve(egress_port, egress_policy)` handles plain HTTP
  requests (absolute-form URLs, rewritten to origin-form with a matching
  `Host` header; an `OPTIONS` with an empty path becomes `*`) and `CONNECT`
  tunnels. `egress_policy` is any object with `is_host_allowed(host)`;
  refused hosts get `401` "blocked by egress security policy", failed
  outbound connections get `503`, malformed targets get `400`.
- `HostHttpProxy.bind(egress_port)` / `HostHttpProxy.serve()` accept vsock
  connections from the enclave, read a `ConnectRequest`, dial the TCP address
  and answer with a `ConnectResponse`, then relay bytes. The host name `host`
  (any case) means `127.0.0.1` on the host.
- `remote_connect(egress_port, host, port)` is the enclave-side dial through
  the host; it raises `ConnectionError("os_err: <code>: <message>")` when the
  host could not connect.
- Messages on the vsock are JSON, each preceded by a 2-byte little-endian
  length: `{"host": ..., "port": ...}`, then `"Ok"` or
  `{"Err": {"os_code": ..., "message": ...}}`.
- Helpers: `Response`, `err_resp`, `bad_request`, `blocked`, `is_empty`.

### `enclaver.utils`

- `init_logging(verbosity)` configures the root logger (0 → INFO, 1 → DEBUG,
  2+ → TRACE, via `level_filter`), without timestamps.
- `log_lines_from_stream(target, reader)` logs each line of a stream under the
  logger `target` (lines longer than 4 KiB are reported as errors).
- `spawn(name, coro)` starts a named task.
- `register_shutdown_signal_handler()` returns a task that finishes with the
  signal once SIGINT or SIGTERM arrives.
- `must_to_str(path)` returns a path as `str`, raising `ValueError` if it is
  not valid UTF-8.

## Example

```python
import asyncio
from enclaver.ingress import HostProxy
from enclaver.utils import init_logging, register_shutdown_signal_handler

async def main():
    init_logging(1)
    proxy = await HostProxy.bind(8080)
    task = asyncio.create_task(proxy.serve(16, 8080))
    signal_task = await register_shutdown_signal_handler()
    await signal_task
    task.cancel()

asyncio.run(main())
```

## What it does not do

There is no command-line program. The package does not build or start
enclaves, run containers, read manifests or define egress policies; it gives
the proxies, vsock and TLS pieces that such a program would be built from.

## Installation

```
pip install .
```

Tests:

```
pip install ".[test]"
pytest
```