"""``PartitionTableWriter`` protocol and the partition layout written when a whole
device is formatted.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple, Protocol

__all__ = [
    "PartitionScheme",
    "PartitionRequest",
    "DiskDescriptor",
    "PartitionTableWriter",
    "full_disk_descriptor",
]


SECTOR_SIZE = 512
SKIP_LBA = 2048  # 1 MiB alignment for the first partition

PART_TYPE_FAT32 = 0x0C  # FAT32 with LBA addressing
PART_NAME = "android_sdcard"


class PartitionScheme(Enum):
    """Partition table type."""

    MBR = 0
    GPT = 1


class PartitionRequest(NamedTuple):
    """Partition to be created by a ``PartitionTableWriter``.

    A ``length_kb`` of ``-1`` extends the partition to the end of the disk.
    """

    name: str
    type: int
    active: bool = False
    length_kb: int = -1


class DiskDescriptor(NamedTuple):
    device: str
    scheme: PartitionScheme
    sector_size: int
    skip_lba: int
    partitions: tuple[PartitionRequest, ...]


class PartitionTableWriter(Protocol):
    def apply(self, descriptor: DiskDescriptor) -> None:
        """Write the partition table described by ``descriptor``.

        Raises ``OSError`` on failure.
        """
        ...


def full_disk_descriptor(device_path: str) -> DiskDescriptor:
    """Describe an MBR table holding a single active FAT32 partition spanning the
    whole device at ``device_path``.
    """
    return DiskDescriptor(
        device=device_path,
        scheme=PartitionScheme.MBR,
        sector_size=SECTOR_SIZE,
        skip_lba=SKIP_LBA,
        partitions=(PartitionRequest(PART_NAME, PART_TYPE_FAT32, active=True),),
    )
