"""Platform-specific mount and device operations for Linux systems."""

from __future__ import annotations

import sys

assert sys.platform == "linux"  # skipcq: BAN-B101

import ctypes
import ctypes.util
import logging
import os
import re
import stat
import subprocess
from ctypes import c_char_p, c_int, c_ulong
from errno import EEXIST, ENOTDIR
from fcntl import ioctl
from typing import NamedTuple

from .base import DeviceNumber
from .system import MountFlags

__all__ = [
    "MountEntry",
    "LinuxMountSystem",
    "mount",
    "umount",
    "read_mounts",
    "is_mounted",
    "make_block_node",
    "attach_loop",
    "detach_loop",
    "filesystem_label",
]


log = logging.getLogger(__name__)


PROC_MOUNTS = "/proc/mounts"
BLKID = "blkid"

LOOP_SET_FD = 0x4C00
LOOP_CLR_FD = 0x4C01

BLOCK_NODE_MODE = 0o660


_libc = ctypes.CDLL(ctypes.util.find_library("c") or "libc.so.6", use_errno=True)

_mount = _libc.mount
_mount.argtypes = [c_char_p, c_char_p, c_char_p, c_ulong, c_char_p]
_mount.restype = c_int

_umount2 = _libc.umount2
_umount2.argtypes = [c_char_p, c_int]
_umount2.restype = c_int


class MountEntry(NamedTuple):
    """Line of ``/proc/mounts``."""

    device: str
    mountpoint: str
    fstype: str
    options: str


def _encode(value: str | None) -> bytes | None:
    return None if value is None else os.fsencode(value)


def _raise_errno(*filenames: str) -> None:
    errno = ctypes.get_errno()
    raise OSError(errno, os.strerror(errno), *filenames)


def mount(
    source: str,
    target: str,
    fstype: str = "",
    flags: int = 0,
    data: str = None,
) -> None:
    """Invoke ``mount(2)``."""
    result = _mount(
        _encode(source), _encode(target), _encode(fstype), flags, _encode(data)
    )
    if result != 0:
        _raise_errno(source, target)


def umount(target: str, flags: int = 0) -> None:
    """Invoke ``umount2(2)``."""
    if _umount2(_encode(target), flags) != 0:
        _raise_errno(target)


_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape(field: str) -> str:
    """Undo the octal escaping of whitespace and backslashes used in
    ``/proc/mounts``.
    """
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def read_mounts(path: str = PROC_MOUNTS) -> list[MountEntry]:
    """Parse the mount table at ``path``."""
    entries = []
    with open(path, encoding="utf-8", errors="surrogateescape") as f:
        for line in f:
            fields = line.split()
            if len(fields) < 4:
                continue
            device, mountpoint, fstype, options = fields[:4]
            entries.append(
                MountEntry(_unescape(device), _unescape(mountpoint), fstype, options)
            )
    return entries


def is_mounted(mountpoint: str, mounts: str = PROC_MOUNTS) -> bool:
    """Whether ``mountpoint`` appears in the mount table.

    Errors reading the mount table are logged and reported as "not mounted".
    """
    try:
        return any(entry.mountpoint == mountpoint for entry in read_mounts(mounts))
    except OSError as e:
        log.error(f"Error reading {mounts} ({e.strerror})")
        return False


def make_block_node(path: str, device: DeviceNumber) -> None:
    """Create a block device node at ``path``; an existing node is kept."""
    try:
        os.mknod(path, BLOCK_NODE_MODE | stat.S_IFBLK, device.dev)
    except FileExistsError:
        pass


def attach_loop(loop_device: str, image: str) -> None:
    """Attach the file ``image`` to ``loop_device`` via ``LOOP_SET_FD``."""
    loop_fd = os.open(loop_device, os.O_RDWR)
    try:
        image_fd = os.open(image, os.O_RDWR)
        try:
            ioctl(loop_fd, LOOP_SET_FD, image_fd)
        finally:
            os.close(image_fd)
    finally:
        os.close(loop_fd)
    log.debug(f"Attached {image} to {loop_device}")


def detach_loop(loop_device: str) -> None:
    """Detach whatever file is attached to ``loop_device`` via ``LOOP_CLR_FD``."""
    fd = os.open(loop_device, os.O_RDWR)
    try:
        ioctl(fd, LOOP_CLR_FD, 0)
    finally:
        os.close(fd)
    log.debug(f"Detached {loop_device}")


def filesystem_label(device_path: str) -> str | None:
    """Return the filesystem label of ``device_path`` as reported by ``blkid``.

    Returns ``None`` if ``blkid`` is unavailable or the filesystem has no label.
    """
    try:
        completed_process = subprocess.run(
            [BLKID, "-s", "LABEL", "-o", "value", device_path],
            capture_output=True,
            check=False,
            encoding="utf-8",
        )
    except FileNotFoundError:
        log.warning("blkid not available")
        return None
    label = completed_process.stdout.strip()
    return label or None


class LinuxMountSystem:
    """``MountSystem`` backed by the running kernel."""

    def __init__(self, mounts: str = PROC_MOUNTS):
        self._mounts = mounts

    def is_mounted(self, path: str) -> bool:
        return is_mounted(path, self._mounts)

    def mount(
        self,
        source: str,
        target: str,
        fstype: str = "",
        flags: MountFlags = MountFlags.NONE,
        data: str = None,
    ) -> None:
        mount(source, target, fstype, int(flags), data)

    def move_mount(self, source: str, target: str) -> None:
        mount(source, target, "", int(MountFlags.MOVE))

    def unmount(self, target: str) -> None:
        umount(target)

    def exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def make_dir(self, path: str, mode: int = 0o755) -> None:
        try:
            os.mkdir(path, mode)
        except FileExistsError:
            if not os.path.isdir(path):
                raise OSError(ENOTDIR, os.strerror(ENOTDIR), path) from None

    def remove_dir(self, path: str) -> None:
        os.rmdir(path)

    def remove_file(self, path: str) -> None:
        os.unlink(path)

    def rename(self, source: str, target: str) -> None:
        os.rename(source, target)

    def symlink(self, target: str, link: str) -> None:
        try:
            os.symlink(target, link)
        except OSError as e:
            if e.errno != EEXIST:
                raise

    def make_block_node(self, path: str, device: DeviceNumber) -> None:
        make_block_node(path, device)

    def attach_loop(self, loop_device: str, image: str) -> None:
        attach_loop(loop_device, image)

    def detach_loop(self, loop_device: str) -> None:
        detach_loop(loop_device)

    def write_text(self, path: str, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    def filesystem_label(self, device_path: str) -> str | None:
        return filesystem_label(device_path)
