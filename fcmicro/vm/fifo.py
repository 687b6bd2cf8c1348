"""IO connectors backed by named pipes."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future
from typing import BinaryIO, Callable, Union

Logger = Union[logging.Logger, logging.LoggerAdapter]

IOConnector = Callable[[threading.Event, Logger], "Future[BinaryIO]"]
"""Starts an IO connection; the future resolves to a binary stream.

The event is set when the owning process exits or fails to start, which
abandons a connection still being set up (the future is then cancelled).
"""

_FIFO_PERM = 0o300
_POKE_INTERVAL = 0.05


def _ensure_fifo(path: str) -> None:
    try:
        os.stat(path)
    except FileNotFoundError:
        try:
            os.mkfifo(path, _FIFO_PERM)
        except FileExistsError:
            pass


def _poke(path: str, flag: int) -> None:
    """Open the other end of the FIFO briefly to release a blocked open."""
    opposite = os.O_WRONLY if flag == os.O_RDONLY else os.O_RDONLY
    try:
        fd = os.open(path, opposite | os.O_NONBLOCK)
    except OSError:
        return
    os.close(fd)


def _fifo_connector(path: str, flag: int) -> IOConnector:
    mode = "rb" if flag == os.O_RDONLY else "wb"

    def connect(cancel: threading.Event, logger: Logger) -> Future:
        future: Future = Future()
        # Create the FIFO synchronously so it exists before any task service sees it.
        try:
            _ensure_fifo(path)
        except OSError as err:
            future.set_exception(err)
            return future

        opened = threading.Event()
        cancelled = threading.Event()

        def open_fifo() -> None:
            try:
                fd = os.open(path, flag)
            except OSError as err:
                opened.set()
                logger.debug("failed to open fifo %s: %s", path, err)
                future.set_exception(err)
                return
            opened.set()
            if cancelled.is_set():
                os.close(fd)
                future.cancel()
                return
            future.set_result(os.fdopen(fd, mode, buffering=0))

        def watch() -> None:
            while not opened.wait(_POKE_INTERVAL):
                if cancel.is_set():
                    cancelled.set()
                    _poke(path, flag)

        threading.Thread(target=open_fifo, daemon=True).start()
        threading.Thread(target=watch, daemon=True).start()
        return future

    return connect


def read_fifo_connector(path: str) -> IOConnector:
    """Connector for a FIFO opened for reading, created if missing."""
    return _fifo_connector(path, os.O_RDONLY)


def write_fifo_connector(path: str) -> IOConnector:
    """Connector for a FIFO opened for writing, created if missing."""
    return _fifo_connector(path, os.O_WRONLY)