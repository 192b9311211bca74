"""``EventBroadcaster`` protocol and the response codes of published events."""

from __future__ import annotations

from enum import IntEnum
from typing import Protocol

__all__ = ["ResponseCode", "EventBroadcaster"]


class ResponseCode(IntEnum):
    """Codes of unsolicited broadcasts."""

    VOLUME_STATE_CHANGE = 605
    VOLUME_MOUNT_FAILED_BLANK = 610
    VOLUME_MOUNT_FAILED_DAMAGED = 611
    VOLUME_MOUNT_FAILED_NO_MEDIA = 612
    VOLUME_DISK_INSERTED = 630
    VOLUME_DISK_REMOVED = 631
    VOLUME_BAD_REMOVAL = 632


class EventBroadcaster(Protocol):
    def send_broadcast(self, code: ResponseCode, message: str) -> None:
        """Publish ``message`` to every listening client."""
        ...
