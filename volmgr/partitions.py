"""Partition bookkeeping of the disk backing a volume.

``BlockDisk`` is kept up to date by hotplug events, ``PartitionEnumerator``
turns it into the ordered set of device nodes a mount attempt works on.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple

from .base import (
    MAX_PARTS,
    WHOLE_DISK,
    ConfigurationError,
    DeviceNumber,
    MediaRemovedError,
    PartitionMap,
)

if TYPE_CHECKING:
    from .system import MountSystem
    from .typing import Sleeper
    from .volume import Volume

__all__ = [
    "BlockDisk",
    "PartitionNode",
    "PartitionSet",
    "PartitionEnumerator",
    "wait_for_node",
]


log = logging.getLogger(__name__)


class PartitionNode(NamedTuple):
    """Device node of one partition, or of the whole disk if ``index`` is
    ``WHOLE_DISK``.
    """

    index: int
    device: DeviceNumber
    label: str | None = None

    @property
    def whole_disk(self) -> bool:
        return self.index == WHOLE_DISK


class PartitionSet(NamedTuple):
    nodes: tuple[PartitionNode, ...]
    valid: PartitionMap
    whole_disk: bool


class _Snapshot(NamedTuple):
    disk: DeviceNumber | None
    node_path: str | None
    parts: int
    minors: list[int | None]
    labels: list[str | None]
    valid: PartitionMap


class BlockDisk:
    """Disk device number and partitions currently known for a volume.

    ``parts`` is the number of partitions announced by the disk event; ``0``
    means the disk carries no partition table and is used as a whole.
    """

    def __init__(self) -> None:
        self._disk: DeviceNumber | None = None
        self._node_path: str | None = None
        self._parts = 0
        self._minors: list[int | None] = [None] * MAX_PARTS
        self._labels: list[str | None] = [None] * MAX_PARTS
        self._valid = PartitionMap()
        self._original: _Snapshot | None = None

    def disk_added(self, device: DeviceNumber, parts: int) -> None:
        if not 0 <= parts <= MAX_PARTS:
            log.warning(
                f"Disk {device} announces {parts} partitions, using at most "
                f"{MAX_PARTS}"
            )
            parts = min(max(parts, 0), MAX_PARTS)
        self.clear()
        self._disk = device
        self._parts = parts

    def partition_added(
        self, index: int, device: DeviceNumber, label: str = None
    ) -> None:
        if not 0 <= index < MAX_PARTS:
            raise IndexError(f"Partition index must be in range (0, {MAX_PARTS - 1})")
        if self._disk is not None and device.major != self._disk.major:
            log.warning(f"Partition {device} does not belong to disk {self._disk}")
        self._minors[index] = device.minor
        self._labels[index] = label or None
        self._valid.set(index)
        if index >= self._parts:
            self._parts = index + 1

    def partition_removed(self, index: int) -> None:
        if not 0 <= index < MAX_PARTS:
            raise IndexError(f"Partition index must be in range (0, {MAX_PARTS - 1})")
        self._minors[index] = None
        self._labels[index] = None
        self._valid.clear(index)

    def clear(self) -> None:
        """Forget the disk and all of its partitions."""
        self._disk = None
        self._node_path = None
        self._parts = 0
        self._minors = [None] * MAX_PARTS
        self._labels = [None] * MAX_PARTS
        self._valid.clear()
        self._original = None

    def substitute(self, node_path: str, device: DeviceNumber) -> None:
        """Replace the disk by ``device`` (at ``node_path``), which is used as a
        whole.

        Only one substitution may be active at a time.
        """
        if self._original is not None:
            raise ConfigurationError(f"Disk {self._disk} is already substituted")
        self._original = _Snapshot(
            self._disk,
            self._node_path,
            self._parts,
            self._minors,
            self._labels,
            self._valid.copy(),
        )
        self._disk = device
        self._node_path = node_path
        self._parts = 0
        self._minors = [None] * MAX_PARTS
        self._labels = [None] * MAX_PARTS
        self._valid.clear()

    def revert(self) -> None:
        """Undo ``substitute()``."""
        if self._original is None:
            return
        (
            self._disk,
            self._node_path,
            self._parts,
            self._minors,
            self._labels,
            self._valid,
        ) = self._original
        self._original = None

    @property
    def present(self) -> bool:
        return self._disk is not None

    @property
    def substituted(self) -> bool:
        return self._original is not None

    @property
    def device(self) -> DeviceNumber | None:
        return self._disk

    @property
    def node_path(self) -> str | None:
        """Explicit device node path, set while the disk is substituted."""
        return self._node_path

    @property
    def parts(self) -> int:
        return self._parts

    @property
    def valid(self) -> PartitionMap:
        return self._valid.copy()

    @property
    def complete(self) -> bool:
        """Whether every announced partition has been added."""
        return len(self._valid) >= self._parts

    def partition_device(self, index: int) -> DeviceNumber | None:
        minor = self._minors[index]
        if self._disk is None or minor is None:
            return None
        return DeviceNumber(self._disk.major, minor)

    def partition_label(self, index: int) -> str | None:
        if index == WHOLE_DISK:
            return None
        return self._labels[index]

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(disk={self._disk}, parts={self._parts}, "
            f"valid={self._valid!r})"
        )


class PartitionEnumerator:
    """Resolve a volume's disk into the device nodes to mount."""

    def enumerate(self, volume: Volume) -> PartitionSet:
        """Return the current partitions of ``volume``, lowest index first.

        A disk without partition table yields a single ``WHOLE_DISK`` node.
        ``MediaRemovedError`` is raised if no disk is present or an announced
        partition table has no partition left.
        """
        disk = volume.disk
        if not disk.present:
            raise MediaRemovedError(f"Volume {volume.label} has no disk")

        valid = disk.valid
        if disk.parts == 0:
            device = disk.device
            assert device is not None  # skipcq: BAN-B101
            node = PartitionNode(WHOLE_DISK, device, volume.label)
            return PartitionSet((node,), valid, True)

        nodes = []
        for index in valid:
            device = disk.partition_device(index)
            if device is not None:
                nodes.append(PartitionNode(index, device, disk.partition_label(index)))
        if not nodes:
            raise MediaRemovedError(f"Volume {volume.label} has no partitions")
        return PartitionSet(tuple(nodes), valid, False)


def wait_for_node(
    system: MountSystem,
    path: str,
    timeout: float,
    interval: float,
    sleep: Sleeper,
) -> bool:
    """Poll until the device node ``path`` exists.

    Returns whether the node appeared within ``timeout`` seconds.
    """
    waited = 0.0
    while not system.exists(path):
        if waited >= timeout:
            log.error(f"Timed out waiting for {path}")
            return False
        sleep(interval)
        waited += interval
    return True
