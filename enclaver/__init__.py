"""Asyncio ingress and egress proxies over vsock, with TLS and logging helpers."""

__version__ = "0.1.0"