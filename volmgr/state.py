"""Volume states, volume types and volume flags."""

from __future__ import annotations

from enum import Enum, Flag, IntEnum

__all__ = ["VolumeState", "VolumeType", "VolumeFlags"]


class VolumeState(IntEnum):
    """State of a volume.

    The integer values are the codes published in state change broadcasts.
    """

    INIT = -1
    NO_MEDIA = 0
    IDLE = 1
    PENDING = 2
    CHECKING = 3
    MOUNTED = 4
    UNMOUNTING = 5
    FORMATTING = 6
    SHARED = 7
    SHARED_MNT = 8
    DELETING = 9

    @property
    def description(self) -> str:
        """Human-readable name used in broadcasts."""
        return _DESCRIPTIONS[self]

    @property
    def transient(self) -> bool:
        """Whether a volume may only pass through this state during an operation."""
        return self in (
            VolumeState.CHECKING,
            VolumeState.FORMATTING,
            VolumeState.UNMOUNTING,
        )


_DESCRIPTIONS = {
    VolumeState.INIT: "Initializing",
    VolumeState.NO_MEDIA: "No-Media",
    VolumeState.IDLE: "Idle-Unmounted",
    VolumeState.PENDING: "Pending",
    VolumeState.CHECKING: "Checking",
    VolumeState.MOUNTED: "Mounted",
    VolumeState.UNMOUNTING: "Unmounting",
    VolumeState.FORMATTING: "Formatting",
    VolumeState.SHARED: "Shared-Unmounted",
    VolumeState.SHARED_MNT: "Shared-Mounted",
    VolumeState.DELETING: "Deleting",
}


class VolumeType(Enum):
    """Kind of media backing a volume."""

    FLASH = 0
    SDCARD = 1
    UMS = 2
    SATA = 3
    UNKNOWN = 4

    @property
    def per_partition_dirs(self) -> bool:
        """Whether each partition is mounted in its own subdirectory."""
        return self in (VolumeType.UMS, VolumeType.SATA)

    @property
    def single_mount(self) -> bool:
        """Whether the volume only ever mounts one partition at its mountpoint."""
        return self in (VolumeType.FLASH, VolumeType.SDCARD)


class VolumeFlags(Flag):
    NONE = 0
    NONREMOVABLE = 0x1
    ENCRYPTABLE = 0x2
    REMOVABLE = 0x4
