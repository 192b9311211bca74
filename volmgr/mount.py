"""Mounting of the partitions of a volume.

Every partition node is run through the filesystem detection cascade and then
mounted at its target directory. The primary storage volume with secure
containers is first mounted on a staging path and only exposed at its public
mountpoint after the secure container directory has been obscured.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import compat, crypto, secure
from .base import (
    MediaRemovedError,
    NoSuitableFilesystem,
    UnrecoverableMediaError,
    VolumeDeletedError,
    join_path,
)
from .broadcast import ResponseCode
from .filesystem import MountOptions, detect_filesystem, mount_filesystem
from .partitions import PartitionEnumerator
from .state import VolumeState, VolumeType

if TYPE_CHECKING:
    from .context import VolumeContext
    from .filesystem import FilesystemDriver
    from .partitions import PartitionNode, PartitionSet
    from .unmount import UnmountOrchestrator
    from .volume import Volume

__all__ = ["MountOrchestrator"]


log = logging.getLogger(__name__)


class MountOrchestrator:
    """Mount the partitions of volumes sharing ``ctx``.

    :param ctx: Shared volume context.
    :param unmounter: Used to move the staged primary storage to its public
        mountpoint.
    """

    def __init__(self, ctx: VolumeContext, unmounter: UnmountOrchestrator):
        self._ctx = ctx
        self._unmounter = unmounter
        self._enumerator = PartitionEnumerator()

    def mount(self, volume: Volume) -> None:
        """Mount every usable partition of ``volume``.

        The volume ends up ``MOUNTED`` if at least one partition was mounted.
        Otherwise it is set back to ``IDLE`` and ``NoSuitableFilesystem`` is
        raised. Deletion or media removal observed between partitions unwinds
        what was mounted so far and raises ``VolumeDeletedError`` or
        ``MediaRemovedError``.
        """
        ctx = self._ctx
        partitions = self._enumerator.enumerate(volume)
        if crypto.needs_remap(volume, ctx):
            partitions = crypto.remap_volume(volume, ctx, partitions, self._enumerator)

        if volume.debug:
            log.debug(
                f"Volume {volume.label} mounting {len(partitions.nodes)} device "
                f"node(s), valid={partitions.valid!r}"
            )

        for node in partitions.nodes:
            self._checkpoint(volume)

            target = self._target(volume, node, partitions)
            if target is None:
                continue
            device_path = ctx.device_path(node.device.major, node.device.minor)
            log.info(
                f"{device_path} being considered for partition {node.label or ''} "
                f"in volume {volume.label} at {target} index={node.index} "
                f"type={volume.volume_type.name}"
            )

            if volume.state is not VolumeState.CHECKING:
                volume.set_state(VolumeState.CHECKING)
            try:
                recognized = detect_filesystem(ctx.drivers, device_path)
            except NoSuitableFilesystem:
                self._remove_partition_dir(volume, target)
                continue
            except UnrecoverableMediaError:
                self._unwind(volume)
                volume.set_state(VolumeState.IDLE)
                raise

            if volume.has_asec:
                mounted = self._mount_obscured(volume, device_path, recognized)
            else:
                mounted = self._mount_direct(volume, device_path, target, recognized)
            if mounted is None:
                continue

            volume.record_partition(node.index, target, mounted)
            if volume.volume_type is VolumeType.FLASH:
                compat.link_virtual_sdcard(ctx, target)
                ctx.legacy.flash_mounted = True
                compat.publish_fake_sdcard(volume, ctx, node, target)

        log.info(
            f"Volume {volume.label} mounted partitions: {volume.mounted_partitions!r}"
        )
        self._checkpoint(volume)

        if volume.mounted_partitions:
            volume.set_state(VolumeState.MOUNTED)
            return

        if volume.volume_type.per_partition_dirs:
            self._remove_dir(volume.mountpoint)
        log.error(f"Volume {volume.label} found no suitable devices for mounting")
        volume.set_state(VolumeState.IDLE)
        raise NoSuitableFilesystem(
            f"Volume {volume.label} found no suitable devices for mounting"
        )

    def _checkpoint(self, volume: Volume) -> None:
        if volume.state is VolumeState.DELETING:
            log.error(f"Volume {volume.label} is being deleted, aborting mount")
            self._unwind(volume)
            if volume.volume_type.per_partition_dirs:
                self._remove_dir(volume.mountpoint)
            raise VolumeDeletedError(f"Volume {volume.label} is being deleted")
        if volume.state is VolumeState.NO_MEDIA:
            log.error(f"Volume {volume.label} lost its media, aborting mount")
            self._unwind(volume)
            self._ctx.broadcaster.send_broadcast(
                ResponseCode.VOLUME_MOUNT_FAILED_NO_MEDIA,
                f"Volume {volume.label} {volume.mountpoint} mount failed - no media",
            )
            raise MediaRemovedError(f"Volume {volume.label} has no media")

    def _target(
        self, volume: Volume, node: PartitionNode, partitions: PartitionSet
    ) -> str | None:
        """Create and return the directory ``node`` is mounted at, or ``None`` if
        the partition is to be skipped.
        """
        system = self._ctx.system
        if not volume.volume_type.per_partition_dirs:
            system.make_dir(volume.mountpoint)
            return volume.mountpoint

        if node.whole_disk:
            name = volume.label
        elif not partitions.valid.is_set(node.index) or not node.label:
            return None
        else:
            name = node.label
        target = join_path(volume.mountpoint, name)
        system.make_dir(volume.mountpoint)
        system.make_dir(target)
        return target

    def _options(self, volume: Volume) -> MountOptions:
        config = self._ctx.config
        if self._ctx.is_primary(volume.mountpoint):
            # the primary storage is writable for the sdcard_rw group
            gid = config.sdcard_rw_gid
        else:
            gid = config.media_rw_gid
        return MountOptions(
            owner_uid=config.owner_uid,
            owner_gid=gid,
            permission_mask=config.permission_mask,
        )

    def _mount_direct(
        self,
        volume: Volume,
        device_path: str,
        target: str,
        recognized: FilesystemDriver,
    ) -> str | None:
        try:
            driver = mount_filesystem(
                self._ctx.drivers,
                device_path,
                target,
                self._options(volume),
                preferred=recognized,
            )
        except OSError as e:
            log.error(f"{device_path} failed to mount at {target} ({e.strerror})")
            self._remove_partition_dir(volume, target)
            return None
        return driver.name

    def _mount_obscured(
        self, volume: Volume, device_path: str, recognized: FilesystemDriver
    ) -> str | None:
        ctx = self._ctx
        config = ctx.config

        compat.unlink_virtual_sdcard(ctx)
        try:
            driver = mount_filesystem(
                ctx.drivers,
                device_path,
                config.staging_dir,
                self._options(volume),
                preferred=recognized,
            )
        except OSError as e:
            log.error(f"{device_path} failed to mount at staging ({e.strerror})")
            return None
        log.info(f"Device {device_path}, target {volume.mountpoint} mounted @ staging")

        bound = False
        try:
            secure.remove_autorun(ctx)
            secure.create_bind_mounts(ctx)
            bound = True
            # expose the whole subtree atomically
            self._unmounter.move_mount(config.staging_dir, volume.mountpoint)
        except OSError as e:
            log.error(f"Failed to expose {volume.mountpoint} ({e.strerror})")
            if bound:
                self._release(config.secure_image_dir)
                self._release(config.asec_dir)
            self._release(config.staging_dir)
            self._unwind(volume)
            volume.set_state(VolumeState.IDLE)
            raise

        ctx.legacy.sdcard_mounted = True
        return driver.name

    def _unwind(self, volume: Volume) -> None:
        """Release every partition mounted so far, best effort."""
        ctx = self._ctx
        if volume.fake_sdcard_partition is not None:
            compat.withdraw_fake_sdcard(volume, ctx)

        for index in list(volume.mounted_partitions):
            if volume.has_asec:
                self._release(
                    join_path(volume.mountpoint, ctx.config.secure_image_dir_name)
                )
                self._release(ctx.config.asec_dir)
                self._release(volume.mountpoint)
                ctx.legacy.sdcard_mounted = False
            else:
                path = volume.partition_mountpoint(index)
                self._release(path)
                self._remove_partition_dir(volume, path)
            volume.forget_partition(index)
            log.warning(f"Volume {volume.label} partition {index} unwound")

    def _release(self, path: str) -> None:
        try:
            self._ctx.system.unmount(path)
        except OSError as e:
            log.debug(f"Unable to unmount {path} ({e.strerror})")

    def _remove_partition_dir(self, volume: Volume, path: str) -> None:
        if path != volume.mountpoint:
            self._remove_dir(path)

    def _remove_dir(self, path: str) -> None:
        try:
            self._ctx.system.remove_dir(path)
        except OSError as e:
            log.debug(f"Unable to remove {path} ({e.strerror})")

