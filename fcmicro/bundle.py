"""Helpers for container bundle directories, inside the VM and on the host."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import BinaryIO

from fcmicro.common import (
    BUNDLE_ROOTFS_NAME,
    OCI_CONFIG_NAME,
    SHIM_ADDR_FILE_NAME,
    SHIM_LOG_FIFO_NAME,
)
from fcmicro.oci import VMID_ANNOTATION_KEY

VM_BUNDLE_ROOT = "/container"


def _join(*parts: str) -> str:
    return os.path.normpath(os.path.join(*parts))


class OCIConfigError(Exception):
    """Raised when a bundle's config.json cannot be read, written or parsed."""


@dataclass(frozen=True)
class BundleDir:
    """The root of a container bundle directory."""

    root_path: str

    def __str__(self) -> str:
        return self.root_path

    def __fspath__(self) -> str:
        return self.root_path

    def addr_file_path(self) -> str:
        """Path of the shim address file in the bundle dir."""
        return _join(self.root_path, SHIM_ADDR_FILE_NAME)

    def log_fifo_path(self) -> str:
        """Path of the shim log FIFO in the bundle dir."""
        return _join(self.root_path, SHIM_LOG_FIFO_NAME)

    def rootfs_path(self) -> str:
        """Path of the bundle's rootfs directory."""
        return _join(self.root_path, BUNDLE_ROOTFS_NAME)

    def oci_config_path(self) -> str:
        """Path of the bundle's config.json."""
        return _join(self.root_path, OCI_CONFIG_NAME)

    def oci_config(self) -> OCIConfig:
        """Wrapper around the bundle's config.json."""
        return OCIConfig(self.oci_config_path())


def vm_bundle_dir(task_id: str) -> BundleDir:
    """Directory inside the VM holding the bundle for ``task_id``."""
    return BundleDir(_join(VM_BUNDLE_ROOT, task_id))


@dataclass(frozen=True)
class OCIConfig:
    """File operations on a bundle's config.json."""

    path: str

    def open(self) -> BinaryIO:
        """Open config.json read-only in binary mode."""
        try:
            return open(self.path, "rb")
        except OSError as err:
            raise OCIConfigError(f"failed to open OCI config file {self.path}: {err}") from err

    def read_bytes(self) -> bytes:
        """Return the contents of config.json."""
        try:
            with open(self.path, "rb") as f:
                return f.read()
        except OSError as err:
            raise OCIConfigError(f"failed to read OCI config file {self.path}: {err}") from err

    def write(self, contents: bytes) -> None:
        """Create or overwrite config.json with ``contents``."""
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o700)
            with os.fdopen(fd, "wb") as f:
                f.write(contents)
        except OSError as err:
            raise OCIConfigError(f"failed to write OCI config file {self.path}: {err}") from err

    def vm_id(self) -> str:
        """Return the VM ID annotation, or an empty string if it is absent."""
        with self.open() as f:
            try:
                config = json.load(f)
            except (ValueError, UnicodeDecodeError) as err:
                raise self._parse_error(err) from err

        if not isinstance(config, dict):
            raise self._parse_error("config is not a JSON object")
        annotations = config.get("annotations")
        if annotations is None:
            return ""
        if not isinstance(annotations, dict) or not all(
            isinstance(value, str) for value in annotations.values()
        ):
            raise self._parse_error("annotations must map strings to strings")
        return annotations.get(VMID_ANNOTATION_KEY, "")

    def _parse_error(self, cause: object) -> OCIConfigError:
        return OCIConfigError(
            f"failed to parse Annotations section of OCI config file {self.path}: {cause}"
        )