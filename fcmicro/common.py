"""Shared constants and the stub drive format."""

from __future__ import annotations

from typing import BinaryIO

STDIN_PORT = 11000
"""Vsock port used for stdin."""
STDOUT_PORT = 11001
"""Vsock port used for stdout."""
STDERR_PORT = 11002
"""Vsock port used for stderr."""
DEFAULT_BUFFER_SIZE = 1024
"""Buffer size in bytes used for IO between runtime and agent."""

FIRECRACKER_SOCK_NAME = "firecracker.sock"
FIRECRACKER_VSOCK_NAME = "firecracker.vsock"
FIRECRACKER_LOG_FIFO_NAME = "fc-logs.fifo"
FIRECRACKER_METRICS_FIFO_NAME = "fc-metrics.fifo"

SHIM_ADDR_FILE_NAME = "address"
SHIM_LOG_FIFO_NAME = "log"
OCI_CONFIG_NAME = "config.json"
BUNDLE_ROOTFS_NAME = "rootfs"

VMID_ENV_VAR_KEY = "FIRECRACKER_VM_ID"
FC_SOCKET_FD_ENV_KEY = "FCCONTROL_SOCKET_FD"
SHIM_BINARY_NAME = "containerd-shim-aws-firecracker"

MAGIC_STUB_BYTES = bytes([214, 244, 216, 245, 215, 177, 177, 177])
"""Leading bytes that mark a drive as a stub drive."""

MAX_DRIVE_ID_LENGTH = 0xFF


def is_stub_drive(reader: BinaryIO) -> bool:
    """Return True if the stream starts with the magic stub bytes.

    Any read error is treated as "not a stub drive".
    """
    try:
        head = reader.read(len(MAGIC_STUB_BYTES))
    except (OSError, ValueError):
        return False
    return head == MAGIC_STUB_BYTES


def _read_chunk(reader: BinaryIO, size: int, what: str) -> bytes:
    data = reader.read(size) if size > 0 else b""
    if not data:
        raise EOFError(f"unexpected end of stub content while reading {what}")
    return data


def parse_stub_content(reader: BinaryIO) -> str:
    """Read stub content from the stream and return the encoded drive id."""
    _read_chunk(reader, len(MAGIC_STUB_BYTES), "magic bytes")
    size = _read_chunk(reader, 1, "id length")[0]
    id_bytes = _read_chunk(reader, size, "drive id")
    return id_bytes.decode("utf-8", errors="surrogateescape")


def generate_stub_content(drive_id: str) -> bytes:
    """Build stub content: the magic bytes followed by a length-prefixed id."""
    encoded = drive_id.encode("utf-8", errors="surrogateescape")
    length = len(encoded)
    if length > MAX_DRIVE_ID_LENGTH:
        raise ValueError(
            f"Length of drive id, {length}, is too long and is limited to "
            f"{MAX_DRIVE_ID_LENGTH} bytes"
        )
    return MAGIC_STUB_BYTES + bytes([length]) + encoded