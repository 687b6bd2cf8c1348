"""Stub drives that are patched with real contents once the VM is running."""

from __future__ import annotations

import base64
import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any, BinaryIO, Callable, Iterable, MutableSequence, Optional, Protocol

from fcmicro.common import generate_stub_content

FC_SECTOR_SIZE = 512
"""Sector size of microVM drives, in bytes."""


class DrivesExhaustedError(Exception):
    """No stub drives are left to reserve."""

    def __init__(self) -> None:
        super().__init__("There are no remaining drives to be used")


class _JailPath(Protocol):
    root_path: str


class _Jailer(Protocol):
    def jail_path(self) -> _JailPath: ...

    def stub_drives_options(self) -> Iterable[Callable[[BinaryIO], None]]: ...

    def expose_file_to_jail(self, path: str) -> None: ...


class _Machine(Protocol):
    def update_guest_drive(self, drive_id: str, path_on_host: str) -> Any: ...


class _DriveMounter(Protocol):
    def mount_drive(
        self,
        *,
        drive_id: str,
        destination_path: str,
        filesystem_type: str,
        options: list[str],
    ) -> Any: ...

    def unmount_drive(self, *, drive_id: str) -> Any: ...


@dataclass(frozen=True)
class TokenBucket:
    """One token bucket of a drive rate limiter."""

    one_time_burst: int = 0
    refill_time: int = 0
    capacity: int = 0


@dataclass(frozen=True)
class RateLimiter:
    """Bandwidth and operation rate limits of a drive."""

    bandwidth: Optional[TokenBucket] = None
    ops: Optional[TokenBucket] = None


@dataclass(frozen=True)
class DriveMount:
    """Where and how a host file is mounted inside the VM."""

    host_path: str = ""
    vm_path: str = ""
    filesystem_type: str = ""
    options: tuple[str, ...] = ()
    rate_limiter: Optional[RateLimiter] = None
    is_writable: bool = False


@dataclass(frozen=True)
class DriveConfig:
    """A drive as configured on the VM before it boots."""

    drive_id: str
    path_on_host: str
    is_read_only: bool
    rate_limiter: Optional[RateLimiter] = None
    is_root_device: bool = False


def stub_path_to_drive_id(stub_path: str) -> str:
    """Drive id for a stub path: unpadded base32 of its base name.

    Drive ids may only hold alphanumerics and underscores, which base32 guarantees.
    """
    name = os.path.basename(stub_path.rstrip("/")) or stub_path
    return base64.b32encode(name.encode("utf-8")).decode("ascii").rstrip("=")


def _set_read_write_options(options: Iterable[str], is_writable: bool) -> list[str]:
    expected = "rw" if is_writable else "ro"
    result = list(options)
    for opt in result:
        if opt in ("ro", "rw"):
            if opt != expected:
                raise ValueError(
                    f"mount option {opt} is incompatible with IsWritable={str(is_writable).lower()}"
                )
            return result
    result.append(expected)
    return result


@dataclass(frozen=True)
class StubDrive:
    """A stub drive file and the mount it will be patched with."""

    stub_path: str
    drive_id: str
    drive_mount: DriveMount
    jail: Any = field(default=None, compare=False, repr=False)

    def with_mount_config(
        self,
        host_path: str,
        vm_path: str,
        filesystem_type: str,
        options: Iterable[str],
    ) -> StubDrive:
        """Copy of this drive with the given mount settings; writability and rate limits kept."""
        mount = DriveMount(
            host_path=host_path,
            vm_path=vm_path,
            filesystem_type=filesystem_type,
            options=tuple(options),
            rate_limiter=self.drive_mount.rate_limiter,
            is_writable=self.drive_mount.is_writable,
        )
        return replace(self, drive_mount=mount)

    def patch_and_mount(self, machine: _Machine, drive_mounter: _DriveMounter) -> None:
        """Expose the host file to the jail, patch the drive with it and mount it in the VM."""
        mount = self.drive_mount
        try:
            self.jail.expose_file_to_jail(mount.host_path)
        except Exception as err:
            raise RuntimeError(f"failed to expose patched drive contents to jail: {err}") from err
        try:
            machine.update_guest_drive(self.drive_id, mount.host_path)
        except Exception as err:
            raise RuntimeError(f"failed to patch drive: {err}") from err
        try:
            drive_mounter.mount_drive(
                drive_id=self.drive_id,
                destination_path=mount.vm_path,
                filesystem_type=mount.filesystem_type,
                options=list(mount.options),
            )
        except Exception as err:
            raise RuntimeError(f"failed to mount newly patched drive: {err}") from err


def _new_stub_drive(
    stub_path: str,
    jail: _Jailer,
    is_writable: bool,
    rate_limiter: Optional[RateLimiter],
) -> StubDrive:
    drive_id = stub_path_to_drive_id(stub_path)
    content = generate_stub_content(drive_id)

    fd = os.open(stub_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "wb") as stub_file:
        stub_file.write(content)
        stub_file.flush()
        size = os.fstat(stub_file.fileno()).st_size
        # Drives are read in whole sectors and smaller ones are not shown at all,
        # so round the file up to a sector boundary.
        sectors = -(-size // FC_SECTOR_SIZE)
        os.truncate(stub_path, sectors * FC_SECTOR_SIZE)
        for option in jail.stub_drives_options():
            option(stub_file)

    return StubDrive(
        stub_path=stub_path,
        drive_id=drive_id,
        drive_mount=DriveMount(is_writable=is_writable, rate_limiter=rate_limiter),
        jail=jail,
    )


def _add_stub(
    machine_drives: MutableSequence[DriveConfig],
    jail: _Jailer,
    file_name: str,
    is_writable: bool,
    rate_limiter: Optional[RateLimiter],
    what: str,
) -> StubDrive:
    stub_path = os.path.join(jail.jail_path().root_path, file_name)
    try:
        stub = _new_stub_drive(stub_path, jail, is_writable, rate_limiter)
    except OSError as err:
        raise OSError(err.errno, f"failed to create {what} stub drive: {err.strerror}") from err
    machine_drives.append(
        DriveConfig(
            drive_id=stub.drive_id,
            path_on_host=stub.stub_path,
            is_read_only=not is_writable,
            rate_limiter=rate_limiter,
            is_root_device=False,
        )
    )
    return stub


class StubDriveHandler:
    """Hands out stub drives from a fixed set and takes them back."""

    def __init__(self, free_drives: Iterable[StubDrive] = ()) -> None:
        self._free: list[StubDrive] = list(free_drives)
        self._used: dict[str, StubDrive] = {}
        self._lock = threading.Lock()

    @property
    def free_drives(self) -> list[StubDrive]:
        """Drives not reserved, in the order they will be handed out."""
        with self._lock:
            return list(self._free)

    @property
    def used_drives(self) -> dict[str, StubDrive]:
        """Reserved drives by the id they were reserved for."""
        with self._lock:
            return dict(self._used)

    def reserve(
        self,
        drive_id: str,
        host_path: str,
        vm_path: str,
        filesystem_type: str,
        options: Iterable[str],
        drive_mounter: _DriveMounter,
        machine: _Machine,
    ) -> None:
        """Take a free drive, patch it with ``host_path`` and mount it at ``vm_path``."""
        with self._lock:
            if not self._free:
                raise DrivesExhaustedError()
            if drive_id in self._used:
                raise RuntimeError(
                    f"drive with ID {drive_id} already in use, a previous attempt "
                    "to remove it may have failed"
                )
            free = self._free[0]
            opts = _set_read_write_options(options, free.drive_mount.is_writable)
            stub = free.with_mount_config(host_path, vm_path, filesystem_type, opts)
            try:
                stub.patch_and_mount(machine, drive_mounter)
            except Exception as err:
                raise RuntimeError(f"failed to mount drive inside vm: {err}") from err
            self._free.pop(0)
            self._used[drive_id] = stub

    def release(self, drive_id: str, drive_mounter: _DriveMounter, machine: _Machine) -> None:
        """Unmount the drive reserved for ``drive_id`` and return it to the free set."""
        with self._lock:
            stub = self._used.get(drive_id)
            if stub is None:
                raise LookupError(f"container {drive_id} drive wasn't found")
            try:
                drive_mounter.unmount_drive(drive_id=stub.drive_id)
            except Exception as err:
                raise RuntimeError(f"failed to unmount drive: {err}") from err
            try:
                machine.update_guest_drive(stub.drive_id, os.path.basename(stub.stub_path))
            except Exception as err:
                raise RuntimeError(f"failed to patch drive: {err}") from err
            del self._used[drive_id]
            self._free.append(stub)


def create_container_stubs(
    machine_drives: MutableSequence[DriveConfig],
    jail: _Jailer,
    container_count: int,
) -> StubDriveHandler:
    """Create writable, unlimited stub drives for container root filesystems.

    Each drive's configuration is appended to ``machine_drives``.
    """
    stubs = [
        _add_stub(machine_drives, jail, f"ctrstub{i}", True, None, "container")
        for i in range(container_count)
    ]
    return StubDriveHandler(stubs)


def create_drive_mount_stubs(
    machine_drives: MutableSequence[DriveConfig],
    jail: _Jailer,
    drive_mounts: Iterable[DriveMount],
) -> list[StubDrive]:
    """Create a stub drive ready to patch and mount for each of ``drive_mounts``.

    Writability and rate limits are fixed here since they cannot change after boot.
    """
    stubs = []
    for i, mount in enumerate(drive_mounts):
        options = _set_read_write_options(mount.options, mount.is_writable)
        stub = _add_stub(
            machine_drives,
            jail,
            f"drivemntstub{i}",
            mount.is_writable,
            mount.rate_limiter,
            "drive mount",
        )
        stubs.append(
            stub.with_mount_config(mount.host_path, mount.vm_path, mount.filesystem_type, options)
        )
    return stubs