"""Filesystem image creation and /proc/mounts parsing."""

from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass, field


@dataclass(frozen=True)
class FSImgFile:
    """A file to place in a filesystem image at ``subpath``."""

    subpath: str
    contents: str


@dataclass
class MountInfo:
    """Data parsed from one line of /proc/mounts."""

    source_path: str
    dest_path: str
    type: str
    options: list[str] = field(default_factory=list)


_SUPPORTED_EXT = ("ext3", "ext4")


def create_fs_img(fs_type: str, *args: FSImgFile) -> str:
    """Create an image file of ``fs_type`` holding the given files.

    Returns the path of the image file.
    """
    if fs_type not in _SUPPORTED_EXT:
        raise ValueError(f"unsupported fs type {fs_type!r}")
    return _create_ext_img(fs_type, args)


def _create_ext_img(ext_name: str, files: tuple[FSImgFile, ...]) -> str:
    with tempfile.TemporaryDirectory() as tempdir:
        for img_file in files:
            dest = os.path.join(tempdir, img_file.subpath)
            os.makedirs(os.path.dirname(dest), mode=0o750, exist_ok=True)
            with open(dest, "w", encoding="utf-8") as out:
                out.write(img_file.contents)
            os.chmod(dest, 0o750)

        fd, img_path = tempfile.mkstemp()
        os.close(fd)

        result = subprocess.run(
            [f"mkfs.{ext_name}", "-d", tempdir, img_path, "65536"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    if result.returncode != 0:
        output = (result.stdout or b"").decode("utf-8", errors="replace")
        raise RuntimeError(f"failed to create ext img, command output:\n {output}")
    return img_path


def parse_proc_mount_lines(*args: str) -> list[MountInfo]:
    """Parse lines read from /proc/mounts into MountInfo objects.

    Empty lines are skipped; a malformed line raises ValueError.
    """
    mounts: list[MountInfo] = []
    for line in args:
        if line == "":
            continue
        fields = line.split()
        try:
            if len(fields) < 6:
                raise ValueError("too few fields")
            int(fields[4])
            int(fields[5])
        except ValueError as err:
            raise ValueError(f"failed to parse /proc/mount line {line!r}: {err}") from err
        source, dest, fstype, options = fields[:4]
        mounts.append(
            MountInfo(
                source_path=source,
                dest_path=dest,
                type=fstype,
                options=options.split(","),
            )
        )
    return mounts