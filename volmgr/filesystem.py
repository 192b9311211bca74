"""``FilesystemDriver`` protocol and the detection and mount cascades built on it.

Adding support for a filesystem format means appending a driver to the ordered
list in ``VolumeContext.drivers``; the cascades below iterate that list
generically.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, NamedTuple, Protocol, Sequence

from .base import NoSuitableFilesystem, UnrecoverableMediaError

__all__ = [
    "CheckResult",
    "MountOptions",
    "FilesystemDriver",
    "detect_filesystem",
    "mount_filesystem",
    "find_driver",
]


log = logging.getLogger(__name__)


class CheckResult(Enum):
    """Outcome of checking a device for a specific filesystem format."""

    RECOGNIZED = 0
    NOT_RECOGNIZED = 1
    UNRECOVERABLE = 2


class MountOptions(NamedTuple):
    """Options passed to ``FilesystemDriver.mount()``.

    - ``readonly``: Mount read-only.
    - ``remount``: Change the options of an existing mount.
    - ``executable``: Allow executing binaries from the filesystem.
    - ``owner_uid``, ``owner_gid``: Owner of files on filesystems without
      permissions.
    - ``permission_mask``: umask applied to files on such filesystems.
    - ``create_lost_found``: Create a ``LOST.DIR`` directory if missing.
    """

    readonly: bool = False
    remount: bool = False
    executable: bool = False
    owner_uid: int = 1000
    owner_gid: int = 1015
    permission_mask: int = 0o002
    create_lost_found: bool = True


# noinspection PyPropertyDefinition
class FilesystemDriver(Protocol):
    """Check, mount and format primitives for one filesystem format."""

    @property
    def name(self) -> str:
        """Short name of the format, e.g. ``'vfat'``."""
        ...

    def check(self, device_path: str) -> CheckResult:
        """Check whether ``device_path`` holds a filesystem of this format."""
        ...

    def mount(self, device_path: str, mountpoint: str, options: MountOptions) -> None:
        """Mount ``device_path`` at ``mountpoint``. Raises ``OSError`` on failure."""
        ...

    def format(self, device_path: str, label: str = None) -> None:
        """Create a new filesystem on ``device_path``. Raises ``OSError`` on
        failure.
        """
        ...


def detect_filesystem(
    drivers: Iterable[FilesystemDriver], device_path: str
) -> FilesystemDriver:
    """Return the first driver in ``drivers`` recognizing ``device_path``.

    ``NoSuitableFilesystem`` is raised if no driver recognizes the device.
    ``UnrecoverableMediaError`` is raised as soon as any driver reports an I/O
    failure, without consulting the remaining drivers.
    """
    for driver in drivers:
        result = driver.check(device_path)
        if result is CheckResult.RECOGNIZED:
            log.info(f"{device_path} contains a {driver.name} filesystem")
            return driver
        if result is CheckResult.UNRECOVERABLE:
            log.error(f"{device_path} failed {driver.name} filesystem checks")
            raise UnrecoverableMediaError(
                f"{device_path} failed {driver.name} filesystem checks"
            )
        log.warning(f"{device_path} does not contain a {driver.name} filesystem")

    raise NoSuitableFilesystem(f"{device_path} holds no known filesystem")


def mount_filesystem(
    drivers: Sequence[FilesystemDriver],
    device_path: str,
    mountpoint: str,
    options: MountOptions,
    *,
    preferred: FilesystemDriver = None,
) -> FilesystemDriver:
    """Mount ``device_path`` at ``mountpoint`` with the first driver that succeeds.

    ``preferred`` -- usually the result of ``detect_filesystem()`` -- is tried
    first, followed by the remaining drivers in order. Returns the driver that
    mounted the device. The error of the last attempt is raised if every driver
    fails.
    """
    ordered = list(drivers)
    if preferred is not None:
        ordered = [preferred] + [d for d in ordered if d is not preferred]
    if not ordered:
        raise NoSuitableFilesystem("No filesystem drivers configured")

    error: OSError | None = None
    for driver in ordered:
        try:
            driver.mount(device_path, mountpoint, options)
        except OSError as e:
            log.error(
                f"{device_path} failed to mount via {driver.name} ({e.strerror})"
            )
            error = e
            continue
        log.info(f"{device_path} mounted via {driver.name} at {mountpoint}")
        return driver

    assert error is not None  # skipcq: BAN-B101
    raise error


def find_driver(
    drivers: Iterable[FilesystemDriver], name: str
) -> FilesystemDriver:
    """Return the driver called ``name``."""
    for driver in drivers:
        if driver.name == name:
            return driver
    raise NoSuitableFilesystem(f"No {name} filesystem driver configured")
