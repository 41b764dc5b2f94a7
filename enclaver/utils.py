"""Logging setup, task spawning and shutdown-signal helpers."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator, Coroutine
from typing import Any

LOG_LINE_MAX_LEN = 4 * 1024

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_HANDLER_NAME = "enclaver"
_READ_CHUNK = 64 * 1024

# Third-party loggers are quieter than our own by this many verbosity steps.
_LIBRARY_QUIETING = {
    "asyncio": 3,
}


def level_filter(verbosity: int) -> int:
    """Map a verbosity count to a logging level."""
    if verbosity <= 0:
        return logging.INFO
    if verbosity == 1:
        return logging.DEBUG
    return TRACE


def init_logging(verbosity: int) -> None:
    """Configure the root logger for the given verbosity, without timestamps."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(levelname)-5s %(name)s > %(message)s"))
    root.addHandler(handler)
    root.setLevel(level_filter(verbosity))

    for name, quieting in _LIBRARY_QUIETING.items():
        logging.getLogger(name).setLevel(level_filter(max(verbosity - quieting, 0)))


def must_to_str(path: str | bytes | os.PathLike) -> str:
    """Return the path as a string, failing if it is not valid UTF-8."""
    raw = os.fspath(path)
    error = ValueError("filename contains non-UTF-8 characters")
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise error from None
    try:
        raw.encode("utf-8")
    except UnicodeEncodeError:
        raise error from None
    return raw


def spawn(name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """Start a named task on the running event loop."""
    return asyncio.create_task(coro, name=name)


def _decode_line(raw: bytes, max_length: int) -> str | Exception:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    if len(raw) > max_length:
        return ValueError("line length exceeds maximum")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as err:
        return err


async def _read_lines(reader: Any, max_length: int) -> AsyncIterator[str | Exception]:
    """Yield decoded lines, or the error met while framing one."""
    pending = b""
    discarding = False
    while True:
        try:
            chunk = await reader.read(_READ_CHUNK)
        except OSError as err:
            yield err
            return
        if not chunk:
            break
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            if discarding:
                discarding = False
                continue
            yield _decode_line(raw, max_length)
        if len(pending) > max_length:
            if not discarding:
                discarding = True
                yield ValueError("line length exceeds maximum")
            pending = b""
    if pending and not discarding:
        yield _decode_line(pending, max_length)


async def log_lines_from_stream(target: str, reader: Any) -> None:
    """Log every line read from the stream under the logger named ``target``."""
    logger = logging.getLogger(target)
    async for item in _read_lines(reader, LOG_LINE_MAX_LEN):
        if isinstance(item, Exception):
            logger.info("error reading log stream: %s", item)
        else:
            logger.info("%s", item)


async def register_shutdown_signal_handler() -> asyncio.Task:
    """Return a task that finishes with the signal once SIGINT or SIGTERM arrives."""
    loop = asyncio.get_running_loop()
    received: asyncio.Future = loop.create_future()
    watched = (signal.SIGINT, signal.SIGTERM)

    def on_signal(signum: int) -> None:
        if not received.done():
            received.set_result(signal.Signals(signum))

    for signum in watched:
        loop.add_signal_handler(signum, on_signal, signum)

    async def wait_for_signal() -> signal.Signals:
        try:
            return await received
        finally:
            for signum in watched:
                loop.remove_signal_handler(signum)

    return spawn("signal handler", wait_for_signal())