import errno
import io
import logging
import os
import stat
import threading
from concurrent.futures import CancelledError, Future
from types import SimpleNamespace

import pytest

from fcmicro.vm.ioproxy import (
    IOConnectorPair,
    IOConnectorProxy,
    input_pair,
    output_pair,
)

LOGGER = logging.getLogger("test_ioproxy")


def file_connector(path, mode):
    def connect(cancel, logger):
        future = Future()
        try:
            future.set_result(open(path, mode))
        except OSError as err:
            future.set_exception(err)
        return future

    return connect


def stream_connector(stream):
    def connect(cancel, logger):
        future = Future()
        future.set_result(stream)
        return future

    return connect


class FailingWriter(io.RawIOBase):
    def __init__(self, err):
        super().__init__()
        self.err = err

    def writable(self):
        return True

    def write(self, data):
        raise self.err


def make_proc():
    return SimpleNamespace(exited=threading.Event(), logger=LOGGER)


def test_proxy(tmp_path):
    content = b"hello world"
    (tmp_path / "input").write_bytes(content)
    pair = IOConnectorPair(
        read_connector=file_connector(str(tmp_path / "input"), "rb"),
        write_connector=file_connector(str(tmp_path / "output"), "wb"),
    )
    init, copy = pair.proxy(threading.Event(), LOGGER, 0)
    assert init.result(timeout=5) is None
    assert copy.result(timeout=5) is None
    assert (tmp_path / "output").read_bytes() == content


def test_proxy_larger_than_buffer(tmp_path):
    content = bytes(range(256)) * 20
    (tmp_path / "input").write_bytes(content)
    pair = IOConnectorPair(
        read_connector=file_connector(str(tmp_path / "input"), "rb"),
        write_connector=file_connector(str(tmp_path / "output"), "wb"),
    )
    init, copy = pair.proxy(threading.Event(), LOGGER, 0)
    init.result(timeout=5)
    copy.result(timeout=5)
    assert (tmp_path / "output").read_bytes() == content


def test_proxy_init_failure_closes_other_side(tmp_path):
    writer = io.BytesIO()
    pair = IOConnectorPair(
        read_connector=file_connector(str(tmp_path / "missing"), "rb"),
        write_connector=stream_connector(writer),
    )
    init, copy = pair.proxy(threading.Event(), LOGGER, 0)
    assert isinstance(init.exception(timeout=5), FileNotFoundError)
    assert copy.result(timeout=5) is None
    assert writer.closed is True


def test_proxy_copy_error():
    err = OSError(errno.EIO, "boom")
    pair = IOConnectorPair(
        read_connector=stream_connector(io.BytesIO(b"data")),
        write_connector=stream_connector(FailingWriter(err)),
    )
    init, copy = pair.proxy(threading.Event(), LOGGER, 0)
    assert init.result(timeout=5) is None
    assert copy.exception(timeout=5) is err


def test_proxy_closed_stream_error_reported():
    err = ValueError("I/O operation on closed file")
    pair = IOConnectorPair(
        read_connector=stream_connector(io.BytesIO(b"data")),
        write_connector=stream_connector(FailingWriter(err)),
    )
    _, copy = pair.proxy(threading.Event(), LOGGER, 0)
    assert copy.exception(timeout=5) is err


def test_connector_proxy_open_and_close():
    proxy = IOConnectorProxy()
    assert proxy.is_open() is True
    proxy.close()
    assert proxy.is_open() is False


def test_connector_proxy_start_copies_streams(tmp_path):
    (tmp_path / "out_in").write_bytes(b"stdout data")
    (tmp_path / "err_in").write_bytes(b"stderr data")
    proxy = IOConnectorProxy(
        stdout=IOConnectorPair(
            file_connector(str(tmp_path / "out_in"), "rb"),
            file_connector(str(tmp_path / "out_out"), "wb"),
        ),
        stderr=IOConnectorPair(
            file_connector(str(tmp_path / "err_in"), "rb"),
            file_connector(str(tmp_path / "err_out"), "wb"),
        ),
    )
    init, copy = proxy.start(make_proc())
    assert init.result(timeout=5) is None
    assert copy.result(timeout=5) is None
    assert (tmp_path / "out_out").read_bytes() == b"stdout data"
    assert (tmp_path / "err_out").read_bytes() == b"stderr data"


def test_connector_proxy_start_init_failure(tmp_path):
    proxy = IOConnectorProxy(
        stdin=IOConnectorPair(
            file_connector(str(tmp_path / "missing"), "rb"),
            stream_connector(io.BytesIO()),
        ),
    )
    init, copy = proxy.start(make_proc())
    assert isinstance(init.exception(timeout=5), FileNotFoundError)
    assert copy.result(timeout=5) is None


def test_connector_proxy_start_copy_failure():
    err = OSError(errno.EIO, "boom")
    proxy = IOConnectorProxy(
        stdout=IOConnectorPair(
            stream_connector(io.BytesIO(b"data")),
            stream_connector(FailingWriter(err)),
        ),
    )
    init, copy = proxy.start(make_proc())
    assert init.result(timeout=5) is None
    assert copy.exception(timeout=5) is err


def test_connector_proxy_start_nothing_to_proxy():
    init, copy = IOConnectorProxy().start(make_proc())
    assert init.result(timeout=5) is None
    assert copy.result(timeout=5) is None


def test_input_pair_empty_dest():
    assert input_pair(11000, "") is None


def test_output_pair_empty_src():
    assert output_pair("", 11001) is None


def test_input_pair_creates_fifo(tmp_path):
    dest = str(tmp_path / "stdin.fifo")
    pair = input_pair(11000, dest)
    cancel = threading.Event()
    cancel.set()
    future = pair.write_connector(cancel, LOGGER)
    assert stat.S_ISFIFO(os.stat(dest).st_mode)
    with pytest.raises(CancelledError):
        future.result(timeout=5)


def test_output_pair_creates_fifo(tmp_path):
    src = str(tmp_path / "stdout.fifo")
    pair = output_pair(src, 11001)
    cancel = threading.Event()
    cancel.set()
    future = pair.read_connector(cancel, LOGGER)
    assert stat.S_ISFIFO(os.stat(src).st_mode)
    with pytest.raises(CancelledError):
        future.result(timeout=5)