"""Host- and guest-side vsock connections with retries."""

from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from concurrent.futures import CancelledError, Future
from typing import BinaryIO, Optional

from fcmicro.vm.fifo import IOConnector, Logger

VSOCK_RETRY_TIMEOUT = 20.0
VSOCK_RETRY_INTERVAL = 0.1
UNIX_DIAL_TIMEOUT = 0.1
VSOCK_CONNECT_MSG_TIMEOUT = 0.1
VSOCK_ACK_MSG_TIMEOUT = 1.0

_WATCH_STEP = 0.05
_LOG = logging.getLogger(__name__)

_TEMPORARY_ERRNOS = frozenset(
    {
        errno.EINTR,
        errno.EMFILE,
        errno.ENFILE,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.EAGAIN,
        errno.EWOULDBLOCK,
        errno.ETIMEDOUT,
    }
)


class VSockConnectMsgError(Exception):
    """Writing the CONNECT message failed; not worth retrying."""

    temporary = False

    def __init__(self, cause: object) -> None:
        super().__init__(f"vsock connect message failure: {cause}")
        self.cause = cause


class VSockAckError(Exception):
    """The acknowledgement was missing or malformed; worth retrying."""

    temporary = True

    def __init__(self, cause: object) -> None:
        super().__init__(f"vsock ack message failure: {cause}")
        self.cause = cause


def is_temporary_net_error(error: Optional[BaseException]) -> bool:
    """Whether ``error`` is a retriable network error."""
    if error is None:
        return False
    temporary = getattr(error, "temporary", None)
    if temporary is not None:
        return bool(temporary)
    if isinstance(error, TimeoutError):
        return True
    return isinstance(error, OSError) and error.errno in _TEMPORARY_ERRNOS


def vsock_connect_msg(port: int) -> str:
    """Message a host-side connection writes to reach a guest listener on ``port``."""
    return f"CONNECT {port}\n"


def _close_quietly(sock: socket.socket, logger: Logger) -> None:
    try:
        sock.close()
    except OSError as err:
        logger.error("failed to close vsock socket after previous error: %s", err)


def _read_until(sock: socket.socket, end: bytes, timeout: float) -> str:
    sock.settimeout(timeout)
    try:
        data = bytearray()
        while not data.endswith(end):
            chunk = sock.recv(1)
            if not chunk:
                raise EOFError("connection closed before end of line")
            data += chunk
        return data.decode("utf-8", errors="replace")
    finally:
        sock.settimeout(None)


def _write(sock: socket.socket, message: str, timeout: float) -> None:
    sock.settimeout(timeout)
    try:
        sock.sendall(message.encode("ascii"))
    finally:
        sock.settimeout(None)


def _try_connect(uds_path: str, port: int, logger: Logger) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.settimeout(UNIX_DIAL_TIMEOUT)
        sock.connect(uds_path)
    except OSError as err:
        sock.close()
        raise ConnectionError(
            f"failed to dial {uds_path!r} within {UNIX_DIAL_TIMEOUT}s: {err}"
        ) from err

    try:
        msg = vsock_connect_msg(port)
        try:
            _write(sock, msg, VSOCK_CONNECT_MSG_TIMEOUT)
        except OSError as err:
            raise VSockConnectMsgError(
                f"failed to write {msg!r} within {VSOCK_CONNECT_MSG_TIMEOUT}s: {err}"
            ) from err

        try:
            line = _read_until(sock, b"\n", VSOCK_ACK_MSG_TIMEOUT)
        except (OSError, EOFError) as err:
            raise VSockAckError(
                f'failed to read "OK <port>" within {VSOCK_ACK_MSG_TIMEOUT}s: {err}'
            ) from err

        # The reply is "OK <assigned_hostside_port>\n"; the port is not used.
        if not line.startswith("OK "):
            raise VSockAckError(f'expected to read "OK <port>", but instead read {line!r}')
    except BaseException:
        _close_quietly(sock, logger)
        raise

    sock.settimeout(None)
    return sock


def _dial(uds_path: str, port: int, cancel: threading.Event, logger: Logger) -> socket.socket:
    attempt = 0
    while not cancel.wait(VSOCK_RETRY_INTERVAL):
        attempt += 1
        try:
            return _try_connect(uds_path, port, logger)
        except Exception as err:
            if is_temporary_net_error(err):
                logger.debug("attempt %d: temporary vsock dial failure: %s", attempt, err)
                continue
            logger.error("attempt %d: non-temporary vsock dial failure: %s", attempt, err)
            raise
    raise CancelledError()


def vsock_dial(uds_path: str, port: int, cancel: threading.Event) -> socket.socket:
    """Connect to a guest listener on ``port`` through the host-side unix socket.

    Temporary failures are retried until ``cancel`` is set, which raises
    CancelledError; other failures are raised at once.
    """
    return _dial(uds_path, port, cancel, _LOG)


def _listen_vsock(port: int) -> socket.socket:
    family = getattr(socket, "AF_VSOCK", None)
    if family is None:
        raise OSError(errno.EAFNOSUPPORT, "vsock sockets are not supported on this platform")
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.bind((socket.VMADDR_CID_ANY, port))
        sock.listen()
    except BaseException:
        sock.close()
        raise
    return sock


class VSockListener:
    """Guest-side listener accepting host connections with retries.

    Listens on a vsock socket bound to ``port`` unless an already listening
    socket is given.
    """

    def __init__(
        self,
        port: int,
        cancel: threading.Event,
        logger: Optional[Logger] = None,
        listener: Optional[socket.socket] = None,
    ) -> None:
        self.port = port
        self._cancel = cancel
        self._logger = logger if logger is not None else _LOG
        self._listener = listener if listener is not None else _listen_vsock(port)

    def __enter__(self) -> VSockListener:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def accept(self) -> socket.socket:
        """Accept one connection.

        Raises CancelledError if cancelled and TimeoutError once the retry
        timeout passes.
        """
        deadline = time.monotonic() + VSOCK_RETRY_TIMEOUT
        attempt = 0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"timed out accepting vsock connection on port {self.port}")
            if self._cancel.wait(min(VSOCK_RETRY_INTERVAL, remaining)):
                raise CancelledError()
            attempt += 1
            try:
                self._listener.settimeout(VSOCK_RETRY_INTERVAL)
                conn, _ = self._listener.accept()
            except Exception as err:
                if is_temporary_net_error(err):
                    self._logger.debug(
                        "attempt %d: temporary vsock accept failure: %s", attempt, err
                    )
                    continue
                self._logger.error(
                    "attempt %d: non-temporary vsock accept failure: %s", attempt, err
                )
                raise
            conn.settimeout(None)
            return conn

    def close(self) -> None:
        """Close the underlying listening socket."""
        self._listener.close()


def _as_stream(sock: socket.socket) -> BinaryIO:
    stream = sock.makefile("rwb", buffering=0)
    # The fd stays open until the stream itself is closed.
    sock.close()
    return stream  # type: ignore[return-value]


def _deadline_event(
    parent: threading.Event, timeout: float, done: threading.Event
) -> threading.Event:
    child = threading.Event()
    deadline = time.monotonic() + timeout

    def watch() -> None:
        while not done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0 or parent.wait(min(remaining, _WATCH_STEP)):
                child.set()
                return

    threading.Thread(target=watch, daemon=True).start()
    return child


def vsock_dial_connector(timeout: float, uds_path: str, port: int) -> IOConnector:
    """Connector dialing from the host to a guest listener within ``timeout`` seconds.

    The future resolves to a binary stream over the connection, or raises
    TimeoutError when the timeout passes first.
    """

    def connect(cancel: threading.Event, logger: Logger) -> Future:
        future: Future = Future()

        def run() -> None:
            done = threading.Event()
            limited = _deadline_event(cancel, timeout, done)
            try:
                sock = _dial(uds_path, port, limited, logger)
            except CancelledError:
                if cancel.is_set():
                    future.cancel()
                else:
                    future.set_exception(
                        TimeoutError(f"timed out dialing vsock port {port} via {uds_path!r}")
                    )
            except Exception as err:
                future.set_exception(err)
            else:
                future.set_result(_as_stream(sock))
            finally:
                done.set()

        threading.Thread(target=run, daemon=True).start()
        return future

    return connect


def vsock_accept_connector(port: int) -> IOConnector:
    """Connector listening on guest-side vsock ``port`` and accepting one connection."""

    def connect(cancel: threading.Event, logger: Logger) -> Future:
        future: Future = Future()
        try:
            listener = VSockListener(port, cancel, logger)
        except OSError as err:
            future.set_exception(err)
            return future

        def run() -> None:
            with listener:
                try:
                    conn = listener.accept()
                except CancelledError:
                    future.cancel()
                except Exception as err:
                    future.set_exception(err)
                else:
                    future.set_result(_as_stream(conn))

        threading.Thread(target=run, daemon=True).start()
        return future

    return connect