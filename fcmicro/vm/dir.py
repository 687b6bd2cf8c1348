"""Per-VM shim directories holding sockets, FIFOs and bundle links."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import BinaryIO

from fcmicro.bundle import BundleDir
from fcmicro.common import (
    FIRECRACKER_LOG_FIFO_NAME,
    FIRECRACKER_METRICS_FIFO_NAME,
    FIRECRACKER_SOCK_NAME,
    FIRECRACKER_VSOCK_NAME,
    SHIM_ADDR_FILE_NAME,
    SHIM_LOG_FIFO_NAME,
)

MAX_IDENTIFIER_LENGTH = 76
_IDENTIFIER_PATTERN = r"^[A-Za-z0-9]+(?:[._-](?:[A-Za-z0-9]+))*$"
_IDENTIFIER_RE = re.compile(_IDENTIFIER_PATTERN)


class InvalidIdentifierError(ValueError):
    """A namespace, VM id or container id is not a valid identifier."""


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def validate_identifier(value: str) -> None:
    """Raise InvalidIdentifierError unless ``value`` is a valid identifier."""
    if not value:
        raise InvalidIdentifierError("identifier must not be empty")
    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            f"identifier {_quote(value)} greater than maximum length "
            f"({MAX_IDENTIFIER_LENGTH} characters)"
        )
    if not _IDENTIFIER_RE.fullmatch(value):
        raise InvalidIdentifierError(
            f"identifier {_quote(value)} must match {_IDENTIFIER_PATTERN}"
        )


def _join(*parts: str) -> str:
    return os.path.normpath(os.path.join(*parts))


def shim_dir(shim_base_dir: str, namespace: str, vm_id: str) -> VMDir:
    """Directory scoped to the shim managing ``vm_id`` in ``namespace``.

    The base directory must exist; symlinks in it are resolved.
    """
    for label, value in (("namespace", namespace), ("vm id", vm_id)):
        try:
            validate_identifier(value)
        except InvalidIdentifierError as err:
            raise InvalidIdentifierError(f"invalid {label}: {err}") from err

    try:
        resolved = os.path.realpath(shim_base_dir, strict=True)
    except OSError as err:
        raise OSError(
            err.errno,
            f"failed evaluating any symlinks in path {shim_base_dir!r}: {err.strerror}",
        ) from err

    return VMDir(_join(resolved, namespace, vm_id))


def _create_symlink(old_path: str, new_path: str, what: str) -> None:
    try:
        os.symlink(old_path, new_path)
    except OSError as err:
        raise OSError(
            err.errno,
            f'failed to create {what} symlink from "{new_path}"->"{old_path}": {err.strerror}',
        ) from err


def _rel_path_to(abs_path: str) -> str:
    return os.path.relpath(abs_path, os.getcwd())


@dataclass(frozen=True)
class VMDir:
    """Root of a VM directory holding files, sockets and FIFOs used at runtime."""

    root_path: str

    def __str__(self) -> str:
        return self.root_path

    def __fspath__(self) -> str:
        return self.root_path

    def mkdir(self) -> None:
        """Create the directory with mode 0700; no-op if it exists."""
        os.makedirs(self.root_path, mode=0o700, exist_ok=True)

    def addr_file_path(self) -> str:
        """Path of the shim address file."""
        return _join(self.root_path, SHIM_ADDR_FILE_NAME)

    def log_fifo_path(self) -> str:
        """Path of the FIFO the shim writes its logs to."""
        return _join(self.root_path, SHIM_LOG_FIFO_NAME)

    def open_log_fifo(self) -> BinaryIO:
        """Open the shim log FIFO write-only, blocking until it has a reader."""
        fd = os.open(self.log_fifo_path(), os.O_WRONLY)
        return os.fdopen(fd, "wb", buffering=0)

    def firecracker_sock_path(self) -> str:
        """Path of the VMM API unix socket."""
        return _join(self.root_path, FIRECRACKER_SOCK_NAME)

    def firecracker_sock_rel_path(self) -> str:
        """The VMM API socket path relative to the working directory."""
        return _rel_path_to(self.firecracker_sock_path())

    def firecracker_vsock_path(self) -> str:
        """Path of the vsock unix socket used to reach the VM agent."""
        return _join(self.root_path, FIRECRACKER_VSOCK_NAME)

    def firecracker_vsock_rel_path(self) -> str:
        """The vsock socket path relative to the working directory."""
        return _rel_path_to(self.firecracker_vsock_path())

    def firecracker_log_fifo_path(self) -> str:
        """Path of the FIFO the VMM writes its logs to."""
        return _join(self.root_path, FIRECRACKER_LOG_FIFO_NAME)

    def firecracker_metrics_fifo_path(self) -> str:
        """Path of the FIFO the VMM writes metrics to."""
        return _join(self.root_path, FIRECRACKER_METRICS_FIFO_NAME)

    def bundle_link(self, container_id: str) -> BundleDir:
        """Path of the symlink to the bundle dir of ``container_id``."""
        try:
            validate_identifier(container_id)
        except InvalidIdentifierError as err:
            raise InvalidIdentifierError(
                f"invalid container id {_quote(container_id)}: {err}"
            ) from err
        return BundleDir(_join(self.root_path, container_id))

    def create_bundle_link(self, container_id: str, bundle_dir: BundleDir) -> None:
        """Symlink the bundle link of ``container_id`` to ``bundle_dir``."""
        link = self.bundle_link(container_id)
        _create_symlink(bundle_dir.root_path, link.root_path, "bundle")

    def create_address_link(self, container_id: str) -> None:
        """Symlink the bundle's address file to this directory's address file."""
        link = self.bundle_link(container_id)
        _create_symlink(self.addr_file_path(), link.addr_file_path(), "shim address file")

    def create_shim_log_fifo_link(self, container_id: str) -> None:
        """Symlink this directory's log FIFO to the bundle's log FIFO."""
        link = self.bundle_link(container_id)
        _create_symlink(link.log_fifo_path(), self.log_fifo_path(), "shim log fifo")

    def write_address(self, shim_socket_address: str) -> None:
        """Atomically write the shim address file."""
        path = os.path.abspath(self.addr_file_path())
        temp_path = os.path.join(os.path.dirname(path), "." + os.path.basename(path))
        fd = os.open(temp_path, os.O_RDWR | os.O_CREAT | os.O_EXCL | os.O_SYNC, 0o666)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(shim_socket_address)
            os.replace(temp_path, path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise