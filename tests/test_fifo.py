import logging
import os
import stat
import threading
from concurrent.futures import CancelledError

import pytest

from fcmicro.vm.fifo import read_fifo_connector, write_fifo_connector

LOG = logging.getLogger("test")


def test_write_connector_creates_fifo(tmp_path):
    path = str(tmp_path / "out")
    cancel = threading.Event()
    write_fifo_connector(path)(cancel, LOG)
    try:
        mode = os.stat(path).st_mode
        assert stat.S_ISFIFO(mode)
        assert mode & 0o777 == 0o300
    finally:
        cancel.set()


def test_write_connector_roundtrip(tmp_path):
    path = str(tmp_path / "out")
    os.mkfifo(path, 0o600)
    cancel = threading.Event()
    future = write_fifo_connector(path)(cancel, LOG)
    with open(path, "rb", buffering=0) as reader:
        writer = future.result(timeout=5)
        with writer:
            writer.write(b"hello world")
        assert reader.read() == b"hello world"


def test_read_connector_roundtrip(tmp_path):
    path = str(tmp_path / "in")
    os.mkfifo(path, 0o600)
    cancel = threading.Event()
    future = read_fifo_connector(path)(cancel, LOG)
    with open(path, "wb", buffering=0) as writer:
        reader = future.result(timeout=5)
        writer.write(b"data")
    with reader:
        assert reader.read() == b"data"


def test_read_connector_cancelled(tmp_path):
    path = str(tmp_path / "in")
    os.mkfifo(path, 0o600)
    cancel = threading.Event()
    future = read_fifo_connector(path)(cancel, LOG)
    cancel.set()
    with pytest.raises(CancelledError):
        future.result(timeout=5)


def test_connector_missing_directory(tmp_path):
    path = str(tmp_path / "missing" / "fifo")
    future = read_fifo_connector(path)(threading.Event(), LOG)
    with pytest.raises(FileNotFoundError):
        future.result(timeout=5)