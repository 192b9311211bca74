"""``MountSystem`` protocol wrapping the operating system primitives used by the
mount and unmount orchestration.

Every method raises ``OSError`` with a meaningful ``errno`` on failure. The
orchestrators rely on ``EBUSY`` for retry decisions and treat ``EINVAL`` and
``ENOENT`` from ``unmount()`` as "not mounted".
"""

from __future__ import annotations

from enum import IntFlag
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .base import DeviceNumber

__all__ = ["MountSystem", "MountFlags"]


class MountFlags(IntFlag):
    """Subset of the ``mount(2)`` flags used by ``volmgr``."""

    NONE = 0
    RDONLY = 1
    NOSUID = 2
    NODEV = 4
    NOEXEC = 8
    REMOUNT = 32
    BIND = 4096
    MOVE = 8192


# noinspection PyPropertyDefinition
class MountSystem(Protocol):
    """Mount table, directory and device node operations."""

    def is_mounted(self, path: str) -> bool:
        """Whether ``path`` is a mountpoint according to the live mount table."""
        ...

    def mount(
        self,
        source: str,
        target: str,
        fstype: str = "",
        flags: MountFlags = MountFlags.NONE,
        data: str = None,
    ) -> None:
        ...

    def move_mount(self, source: str, target: str) -> None:
        """Atomically relocate the mount at ``source`` to ``target``."""
        ...

    def unmount(self, target: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...

    def is_dir(self, path: str) -> bool:
        ...

    def make_dir(self, path: str, mode: int = 0o755) -> None:
        """Create directory ``path``. An existing directory is not an error."""
        ...

    def remove_dir(self, path: str) -> None:
        ...

    def remove_file(self, path: str) -> None:
        ...

    def rename(self, source: str, target: str) -> None:
        ...

    def symlink(self, target: str, link: str) -> None:
        """Create a symbolic link at ``link`` pointing to ``target``."""
        ...

    def make_block_node(self, path: str, device: DeviceNumber) -> None:
        """Create a block device node. An existing node is not an error."""
        ...

    def attach_loop(self, loop_device: str, image: str) -> None:
        ...

    def detach_loop(self, loop_device: str) -> None:
        ...

    def write_text(self, path: str, text: str) -> None:
        ...

    def filesystem_label(self, device_path: str) -> str | None:
        """Return the label of the filesystem on ``device_path``, if any."""
        ...
