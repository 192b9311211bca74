"""Collection of the volumes of one context.

``VolumeManager`` is the entry point for a command dispatcher: it looks volumes
up by label and routes hotplug events to the volume claiming the device. It is
also the hotplug sink the fake sdcard emulation publishes its synthetic events
to.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterator

from .base import ConfigurationError, VolumeNotFoundError
from .mount import MountOrchestrator
from .state import VolumeType
from .unmount import UnmountOrchestrator
from .volume import Volume

if TYPE_CHECKING:
    from .context import VolumeContext
    from .hotplug import BlockEvent
    from .typing import StrPath

__all__ = ["VolumeManager"]


log = logging.getLogger(__name__)


class VolumeManager:
    """Owner of the volumes sharing ``ctx``.

    Registers itself as the hotplug sink of ``ctx`` unless one is set already.
    Operations are not serialized; the caller must not run two operations on the
    same volume concurrently.
    """

    def __init__(self, ctx: VolumeContext):
        self._ctx = ctx
        self._volumes: dict[str, Volume] = {}
        self._unmounter = UnmountOrchestrator(ctx)
        self._mounter = MountOrchestrator(ctx, self._unmounter)
        self._debug = False
        if ctx.hotplug is None:
            ctx.hotplug = self

    def create_volume(
        self,
        label: str,
        mountpoint: str,
        volume_type: VolumeType = VolumeType.UNKNOWN,
        **kwargs,
    ) -> Volume:
        """Create a volume sharing the orchestrators of this manager and add it.

        Keyword arguments are passed on to ``Volume``.
        """
        volume = Volume(
            self._ctx,
            label,
            mountpoint,
            volume_type,
            mounter=self._mounter,
            unmounter=self._unmounter,
            **kwargs,
        )
        self.add_volume(volume)
        return volume

    def add_volume(self, volume: Volume) -> None:
        if volume.label in self._volumes:
            raise ConfigurationError(f"Volume {volume.label} already exists")
        volume.set_debug(self._debug)
        self._volumes[volume.label] = volume
        log.info(f"Volume {volume.label} added at {volume.mountpoint}")

    def lookup(self, label: str) -> Volume:
        try:
            return self._volumes[label]
        except KeyError:
            raise VolumeNotFoundError(f"No volume labelled {label}") from None

    def set_asec_volume(self, label: str) -> None:
        """Make ``label`` the volume hosting the secure container directory."""
        volume = self.lookup(label)
        volume.has_asec = True
        for other in self._volumes.values():
            if other is not volume:
                other.has_asec = False

    def mount_volume(self, label: str) -> None:
        self.lookup(label).mount()

    def unmount_volume(
        self, label: str, force: bool = False, revert_crypto: bool = False
    ) -> None:
        self.lookup(label).unmount(force, revert_crypto)

    def format_volume(self, label: str) -> None:
        self.lookup(label).format()

    def share_volume(self, label: str, lun_file: StrPath) -> None:
        self.lookup(label).share(lun_file)

    def unshare_volume(self, label: str, lun_file: StrPath) -> None:
        self.lookup(label).unshare(lun_file)

    def delete_volume(self, label: str) -> None:
        """Delete the volume ``label`` and drop it from the manager."""
        volume = self.lookup(label)
        volume.delete()
        del self._volumes[label]

    def handle_block_event(self, event: BlockEvent) -> None:
        """Pass ``event`` to the first volume claiming its device path."""
        for volume in self._volumes.values():
            if any(event.devpath.startswith(path) for path in volume.paths):
                volume.handle_block_event(event)
                return
        log.debug(f"No volume claims {event.devpath}")

    def shutdown(self) -> None:
        """Delete every volume, the most recently added first."""
        for label in reversed(list(self._volumes)):
            self.delete_volume(label)

    def set_debug(self, enable: bool) -> None:
        self._debug = enable
        for volume in self._volumes.values():
            volume.set_debug(enable)

    def __iter__(self) -> Iterator[Volume]:
        return iter(list(self._volumes.values()))

    def __len__(self) -> int:
        return len(self._volumes)

    def __contains__(self, label: object) -> bool:
        return label in self._volumes
