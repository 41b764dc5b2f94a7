import asyncio
import logging
import signal
from pathlib import Path

import pytest

from enclaver import utils


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    asyncio_level = logging.getLogger("asyncio").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("asyncio").setLevel(asyncio_level)


@pytest.mark.parametrize(
    "verbosity, expected",
    [(0, logging.INFO), (1, logging.DEBUG), (2, utils.TRACE), (7, utils.TRACE)],
)
def test_level_filter(verbosity, expected):
    assert utils.level_filter(verbosity) == expected


def test_init_logging_sets_levels(restore_logging):
    result = utils.init_logging(1)
    assert result is None
    assert logging.getLogger().level == utils.level_filter(1)
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("asyncio").level == logging.INFO
    utils.init_logging(4)
    assert logging.getLogger("asyncio").level == utils.level_filter(1)
    assert logging.getLogger("asyncio").level == logging.DEBUG


def test_init_logging_installs_a_single_handler(restore_logging):
    utils.init_logging(0)
    utils.init_logging(0)
    named = [h for h in logging.getLogger().handlers if h.get_name() == "enclaver"]
    assert len(named) == 1
    assert logging.getLogger().level == utils.level_filter(0)


def test_must_to_str_accepts_paths():
    assert utils.must_to_str(Path("a") / "b.eif") == str(Path("a") / "b.eif")
    assert utils.must_to_str(b"bundle/manifest") == "bundle/manifest"


@pytest.mark.parametrize("bad", [b"bad\xff", "bad\udcff"])
def test_must_to_str_rejects_non_utf8(bad):
    with pytest.raises(ValueError, match="non-UTF-8"):
        utils.must_to_str(bad)


@pytest.mark.asyncio
async def test_spawn_names_task():
    async def work():
        return 42

    task = utils.spawn("worker", work())
    assert task.get_name() == "worker"
    assert await task == 42


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def _messages(caplog, target):
    return [r.getMessage() for r in caplog.records if r.name == target]


@pytest.mark.asyncio
async def test_log_lines_from_stream(caplog):
    caplog.set_level(logging.INFO)
    data = b"hello\r\nworld\n" + b"x" * (utils.LOG_LINE_MAX_LEN + 10) + b"\nlast"
    await utils.log_lines_from_stream("enclave", _reader(data))
    messages = _messages(caplog, "enclave")
    assert messages[:2] == ["hello", "world"]
    assert messages[2].startswith("error reading log stream:")
    assert messages[3:] == ["last"]


@pytest.mark.asyncio
async def test_log_lines_reports_invalid_utf8(caplog):
    caplog.set_level(logging.INFO)
    await utils.log_lines_from_stream("console", _reader(b"\xff\xfe\nok\n"))
    messages = _messages(caplog, "console")
    assert len(messages) == 2
    assert messages[0].startswith("error reading log stream:")
    assert messages[1] == "ok"


@pytest.mark.asyncio
async def test_log_lines_discards_tail_of_long_line(caplog):
    caplog.set_level(logging.INFO)
    reader = asyncio.StreamReader()

    async def feed():
        reader.feed_data(b"y" * (utils.LOG_LINE_MAX_LEN + 1))
        await asyncio.sleep(0)
        reader.feed_data(b"tail\nnext\n")
        reader.feed_eof()

    await asyncio.gather(utils.log_lines_from_stream("t", reader), feed())
    messages = _messages(caplog, "t")
    assert messages[-1] == "next"
    assert "tail" not in messages
    assert sum(m.startswith("error reading log stream:") for m in messages) == 1


@pytest.mark.asyncio
async def test_shutdown_signal_handler_completes_on_sigterm():
    task = await utils.register_shutdown_signal_handler()
    await asyncio.sleep(0)
    assert not task.done()
    signal.raise_signal(signal.SIGTERM)
    result = await asyncio.wait_for(task, timeout=5)
    assert result == signal.SIGTERM