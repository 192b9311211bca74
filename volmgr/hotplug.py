"""Block device hotplug events.

Events are decoded elsewhere; this module only models them and builds the
synthetic events published by the legacy sdcard emulation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .base import DeviceNumber

__all__ = ["Action", "BlockEvent", "HotplugSink", "fake_sdcard_event"]


FAKE_SDCARD_NAME = "sdcard"
FAKE_SDCARD_SEQNUM = 999


class Action(Enum):
    ADD = "add"
    REMOVE = "remove"
    CHANGE = "change"


@dataclass(frozen=True)
class BlockEvent:
    """Hotplug event of the ``block`` subsystem.

    ``devtype`` is either ``'disk'`` or ``'partition'``. ``nparts`` is only
    meaningful for disks, ``partn`` and ``partname`` only for partitions.
    """

    action: Action
    devpath: str
    major: int
    minor: int
    devname: str = ""
    devtype: str = "disk"
    nparts: int = 0
    partn: int = 0
    partname: str = ""
    seqnum: int = 0
    subsystem: str = "block"

    @property
    def device(self) -> DeviceNumber:
        return DeviceNumber(self.major, self.minor)

    @property
    def is_disk(self) -> bool:
        return self.devtype == "disk"

    def to_uevent(self) -> str:
        """Render the event in the textual uevent format, fields separated by
        spaces.
        """
        fields = [
            f"{self.action.value}@{self.devpath}",
            f"ACTION={self.action.value}",
            f"DEVPATH={self.devpath}",
            f"SUBSYSTEM={self.subsystem}",
            f"MAJOR={self.major}",
            f"MINOR={self.minor}",
            f"DEVNAME={self.devname}",
            f"DEVTYPE={self.devtype}",
        ]
        if self.is_disk:
            fields.append(f"NPARTS={self.nparts}")
        else:
            fields.append(f"PARTN={self.partn}")
            if self.partname:
                fields.append(f"PARTNAME={self.partname}")
        fields.append(f"SEQNUM={self.seqnum}")
        return " ".join(fields)

    def __str__(self) -> str:
        return self.to_uevent()


class HotplugSink(Protocol):
    def handle_block_event(self, event: BlockEvent) -> None:
        """Process ``event`` as if it had been received from the kernel."""
        ...


def fake_sdcard_event(action: Action, devpath: str, device: DeviceNumber) -> BlockEvent:
    """Build the synthetic disk event announcing or withdrawing the legacy sdcard.

    The event describes an unpartitioned disk backed by ``device``, so that the
    volume claiming ``devpath`` mounts it as a whole.
    """
    return BlockEvent(
        action=action,
        devpath=devpath,
        major=device.major,
        minor=device.minor,
        devname=FAKE_SDCARD_NAME,
        devtype="disk",
        nparts=0,
        seqnum=FAKE_SDCARD_SEQNUM,
    )
