"""Proxying of process stdio between pairs of IO connectors."""

from __future__ import annotations

import abc
import errno
import logging
import threading
from concurrent.futures import CancelledError, Future, as_completed
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterable, Optional, Protocol, Tuple

from fcmicro.common import DEFAULT_BUFFER_SIZE
from fcmicro.vm.fifo import IOConnector, Logger, read_fifo_connector, write_fifo_connector
from fcmicro.vm.vsock import vsock_accept_connector

DEFAULT_IO_FLUSH_TIMEOUT = 5.0
"""Seconds to wait after a process exits before forcibly closing its output streams."""

_WATCH_STEP = 0.05

DoneFutures = Tuple["Future[None]", "Future[None]"]


class _Proc(Protocol):
    """What a proxy needs from the process whose stdio it copies."""

    exited: threading.Event
    logger: Logger


def _with_field(logger: Logger, key: str, value: Any) -> logging.LoggerAdapter:
    if isinstance(logger, logging.LoggerAdapter):
        extra = dict(logger.extra or {})
        extra[key] = value
        return logging.LoggerAdapter(logger.logger, extra)
    return logging.LoggerAdapter(logger, {key: value})


def _exception_of(future: Future) -> Optional[BaseException]:
    if future.cancelled():
        return CancelledError()
    return future.exception()


def _resolved() -> "Future[None]":
    future: Future = Future()
    future.set_result(None)
    return future


def _gather(futures: Iterable[Future]) -> "Future[None]":
    """Resolve once every future is done, failing with the first error seen."""
    pending = list(futures)
    result: Future = Future()
    if not pending:
        result.set_result(None)
        return result

    lock = threading.Lock()
    state: dict[str, Any] = {"remaining": len(pending), "error": None}

    def on_done(future: Future) -> None:
        err = _exception_of(future)
        with lock:
            if err is not None and state["error"] is None:
                state["error"] = err
            state["remaining"] -= 1
            finished = state["remaining"] == 0
        if finished:
            if state["error"] is None:
                result.set_result(None)
            else:
                result.set_exception(state["error"])

    for future in pending:
        future.add_done_callback(on_done)
    return result


def _log_close(logger: Logger, *streams: Optional[BinaryIO]) -> None:
    errors = []
    for stream in streams:
        if stream is None:
            continue
        try:
            stream.close()
        except Exception as err:  # noqa: BLE001 - every close error is reported
            errors.append(err)
    if errors:
        logger.error("error closing io stream: %s", "; ".join(str(err) for err in errors))


def _is_closed_error(err: BaseException) -> bool:
    if isinstance(err, ValueError) and "closed" in str(err):
        return True
    return isinstance(err, OSError) and err.errno == errno.EBADF


def _copy(reader: BinaryIO, writer: BinaryIO) -> int:
    total = 0
    while True:
        chunk = reader.read(DEFAULT_BUFFER_SIZE)
        if not chunk:
            break
        view = memoryview(chunk)
        while view:
            written = writer.write(view)
            if written is None:
                written = len(view)
            view = view[written:]
        total += len(chunk)
    flush = getattr(writer, "flush", None)
    if flush is not None:
        flush()
    return total


class IOProxy(abc.ABC):
    """Initializes and copies the stdio of a process running in a VM."""

    @abc.abstractmethod
    def start(self, proc: _Proc) -> DoneFutures:
        """Begin proxying; return futures for IO initialization and IO copying."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the proxy."""

    @abc.abstractmethod
    def is_open(self) -> bool:
        """Whether the proxy has not been closed."""


@dataclass
class IOConnectorPair:
    """The read and write sides of connectors whose IO is copied."""

    read_connector: IOConnector
    write_connector: IOConnector

    def proxy(
        self,
        cancel: threading.Event,
        logger: Logger,
        timeout_after_exit: float,
    ) -> DoneFutures:
        """Connect both sides and copy from reader to writer.

        Once ``cancel`` is set, the streams are closed after
        ``timeout_after_exit`` seconds if they have not closed on their own.
        """
        init_done: Future = Future()
        copy_done: Future = Future()
        io_cancel = threading.Event()

        # Synchronous connector setup completes here; the rest happens below.
        reader_future = self.read_connector(io_cancel, _with_field(logger, "direction", "read"))
        writer_future = self.write_connector(io_cancel, _with_field(logger, "direction", "write"))

        threading.Thread(
            target=self._run,
            args=(
                reader_future,
                writer_future,
                init_done,
                copy_done,
                io_cancel,
                cancel,
                logger,
                timeout_after_exit,
            ),
            daemon=True,
        ).start()
        return init_done, copy_done

    @staticmethod
    def _run(
        reader_future: Future,
        writer_future: Future,
        init_done: Future,
        copy_done: Future,
        io_cancel: threading.Event,
        cancel: threading.Event,
        logger: Logger,
        timeout_after_exit: float,
    ) -> None:
        try:
            streams: dict[int, BinaryIO] = {}
            init_error: Optional[BaseException] = None
            for future in as_completed([reader_future, writer_future]):
                err = _exception_of(future)
                if err is None:
                    streams[id(future)] = future.result()
                elif init_error is None:
                    init_error = err
                    logger.error("error initializing io: %s", err)

            reader = streams.get(id(reader_future))
            writer = streams.get(id(writer_future))

            if init_error is not None:
                init_done.set_exception(init_error)
                _log_close(logger, reader, writer)
                copy_done.set_result(None)
                return
            init_done.set_result(None)

            finished = threading.Event()

            def close_after_exit() -> None:
                while not finished.is_set():
                    if cancel.wait(_WATCH_STEP):
                        timer = threading.Timer(
                            timeout_after_exit, _log_close, args=(logger, reader, writer)
                        )
                        timer.daemon = True
                        timer.start()
                        return

            threading.Thread(target=close_after_exit, daemon=True).start()

            logger.debug("begin copying io")
            copy_error: Optional[BaseException] = None
            try:
                size = _copy(reader, writer)
                logger.debug("copied %d", size)
            except Exception as err:  # noqa: BLE001 - reported through copy_done
                copy_error = err
                if _is_closed_error(err):
                    logger.info("connection was closed: %s", err)
                else:
                    logger.error("error copying io: %s", err)
            finally:
                finished.set()
                _log_close(logger, reader, writer)
                logger.debug("end copying io")

            if copy_error is None:
                copy_done.set_result(None)
            else:
                copy_done.set_exception(copy_error)
        finally:
            io_cancel.set()


class IOConnectorProxy(IOProxy):
    """Proxy for stdin, stdout and stderr; a pair left as None is not proxied."""

    def __init__(
        self,
        stdin: Optional[IOConnectorPair] = None,
        stdout: Optional[IOConnectorPair] = None,
        stderr: Optional[IOConnectorPair] = None,
    ) -> None:
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self._lock = threading.Lock()
        self._closed = False

    def close(self) -> None:
        """Mark the proxy closed."""
        with self._lock:
            self._closed = True

    def is_open(self) -> bool:
        """Whether close has not been called."""
        with self._lock:
            return not self._closed

    def start(self, proc: _Proc) -> DoneFutures:
        """Start proxying every configured stream of ``proc``.

        The first future fails with the first initialization error; the second
        with the first copy error. A copy error or the process exiting stops
        the other streams.
        """
        stop = threading.Event()
        init_futures = []
        copy_futures = []

        def stop_on_error(future: Future) -> None:
            if _exception_of(future) is not None:
                stop.set()

        # No point sending stdin to a process that has exited, so no grace period.
        streams = (
            ("stdin", self.stdin, 0.0),
            ("stdout", self.stdout, DEFAULT_IO_FLUSH_TIMEOUT),
            ("stderr", self.stderr, DEFAULT_IO_FLUSH_TIMEOUT),
        )
        for name, pair, timeout in streams:
            if pair is None:
                proc.logger.debug("skipping proxy io for unset %s", name)
                continue
            init_future, copy_future = pair.proxy(
                stop, _with_field(proc.logger, "stream", name), timeout
            )
            copy_future.add_done_callback(stop_on_error)
            init_futures.append(init_future)
            copy_futures.append(copy_future)

        copy_done = _gather(copy_futures)
        copy_done.add_done_callback(lambda _: stop.set())

        def stop_on_exit() -> None:
            while not copy_done.done():
                if proc.exited.wait(_WATCH_STEP):
                    stop.set()
                    return

        threading.Thread(target=stop_on_exit, daemon=True).start()
        return _gather(init_futures), copy_done


def input_pair(src: int, dest: str) -> Optional[IOConnectorPair]:
    """Pair copying from vsock port ``src`` to the FIFO ``dest``; None if ``dest`` is empty."""
    if dest == "":
        return None
    return IOConnectorPair(
        read_connector=vsock_accept_connector(src),
        write_connector=write_fifo_connector(dest),
    )


def output_pair(src: str, dest: int) -> Optional[IOConnectorPair]:
    """Pair copying from the FIFO ``src`` to vsock port ``dest``; None if ``src`` is empty."""
    if src == "":
        return None
    return IOConnectorPair(
        read_connector=read_fifo_connector(src),
        write_connector=vsock_accept_connector(dest),
    )