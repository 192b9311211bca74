"""Volume state machine.

A volume is a logical storage unit backed by one block device, which may carry
several partitions, and managed at a single mountpoint. Its state changes are
published through the ``EventBroadcaster`` of the context.
"""

from __future__ import annotations

import logging
from errno import EBUSY, EINVAL
from typing import TYPE_CHECKING, Iterable

from . import crypto
from .base import (
    MAX_PARTS,
    WHOLE_DISK,
    ConfigurationError,
    CryptoError,
    DeviceNumber,
    InvalidStateError,
    MediaRemovedError,
    NoSuitableFilesystem,
    PartitionMap,
    UnrecoverableMediaError,
    join_path,
)
from .broadcast import ResponseCode
from .filesystem import find_driver
from .hotplug import Action
from .loop import mount_loop, unmount_loop
from .mount import MountOrchestrator
from .partitions import BlockDisk, PartitionEnumerator
from .state import VolumeFlags, VolumeState, VolumeType
from .table import full_disk_descriptor
from .unmount import UnmountOrchestrator

if TYPE_CHECKING:
    from .context import VolumeContext
    from .hotplug import BlockEvent
    from .typing import StrPath

__all__ = ['Volume']


log = logging.getLogger(__name__)


def _is_under(path: str, directory: str) -> bool:
    directory = directory.rstrip('/')
    return path == directory or path.startswith(f'{directory}/')


class Volume:
    """Storage volume and its mount life cycle.

    Operations are synchronous and may block for seconds. The owner must make
    sure that only one operation runs on a volume at a time.

    :param ctx: Context shared by all volumes of one manager.
    :param label: Unique name of the volume.
    :param mountpoint: Absolute path the volume is mounted at.
    :param volume_type: Kind of media.
    :param flags: Removability and encryption flags.
    :param part_index: 1-based partition of the disk the volume is bound to, or
        ``-1`` if it uses the whole disk.
    :param paths: sysfs device path prefixes of hotplug events the volume
        claims.
    :param mounter: Mount orchestrator to use. Created from ``ctx`` if omitted.
    :param unmounter: Unmount orchestrator to use. Created from ``ctx`` if
        omitted.
    """

    def __init__(
        self,
        ctx: VolumeContext,
        label: str,
        mountpoint: str,
        volume_type: VolumeType = VolumeType.UNKNOWN,
        *,
        flags: VolumeFlags = VolumeFlags.NONE,
        part_index: int = -1,
        paths: Iterable[str] = (),
        mounter: MountOrchestrator = None,
        unmounter: UnmountOrchestrator = None,
    ):
        if not mountpoint.startswith('/'):
            raise ConfigurationError(f'Mountpoint must be absolute, got {mountpoint!r}')
        if part_index != -1 and not 1 <= part_index <= MAX_PARTS:
            raise ConfigurationError(
                f'Partition index must be -1 or in range (1, {MAX_PARTS}), got '
                f'{part_index}'
            )

        self._ctx = ctx
        self._label = label
        self._mountpoint = mountpoint.rstrip('/') or '/'
        self._volume_type = volume_type
        self._flags = flags
        self._part_index = part_index
        self._paths = tuple(paths)
        self._state = VolumeState.INIT
        self._has_asec = False
        self._mounted = PartitionMap()
        self._targets: dict[int, str] = {}
        self._filesystems: dict[int, str] = {}

        if unmounter is None:
            unmounter = UnmountOrchestrator(ctx)
        if mounter is None:
            mounter = MountOrchestrator(ctx, unmounter)
        self._unmounter = unmounter
        self._mounter = mounter

        self.disk = BlockDisk()
        self.debug = False
        self.fake_sdcard_partition: int | None = None
        self.fake_sdcard_device: DeviceNumber | None = None
        self.fake_sdcard_link: str | None = None

    def set_state(self, state: VolumeState) -> None:
        """Change the state of the volume and broadcast the transition.

        Setting the current state again is ignored, and so is any change once the
        volume is being deleted. Entering ``DELETING`` is not broadcast.
        """
        old = self._state
        if old is state:
            log.warning(f'Volume {self._label}: duplicate state ({state.value})')
            return
        if old is VolumeState.DELETING:
            log.warning(
                f'Volume {self._label}: ignoring state {state.value} '
                f'({state.description}), volume is being deleted'
            )
            return

        self._state = state
        log.debug(
            f'Volume {self._label} state changing {old.value} ({old.description}) '
            f'-> {state.value} ({state.description})'
        )
        if state is not VolumeState.DELETING:
            self._ctx.broadcaster.send_broadcast(
                ResponseCode.VOLUME_STATE_CHANGE,
                f'Volume {self._label} {self._mountpoint} state changed from '
                f'{old.value} ({old.description}) to {state.value} '
                f'({state.description})',
            )

    def mount(self) -> None:
        """Mount the volume.

        If the mountpoint turns out to be mounted already, the volume adopts the
        ``MOUNTED`` state without mounting anything.

        :raises MediaRemovedError: The volume has no media.
        :raises InvalidStateError: The volume is not idle.
        :raises NoSuitableFilesystem: No partition could be mounted.
        """
        ctx = self._ctx
        if self._state is VolumeState.NO_MEDIA:
            ctx.broadcaster.send_broadcast(
                ResponseCode.VOLUME_MOUNT_FAILED_NO_MEDIA,
                f'Volume {self._label} {self._mountpoint} mount failed - no media',
            )
            raise MediaRemovedError(f'Volume {self._label} has no media')
        if self._state is not VolumeState.IDLE:
            log.error(
                f'Volume {self._label} mount request in state '
                f'{self._state.description}'
            )
            raise InvalidStateError(
                f'Volume {self._label} is {self._state.description}', EBUSY
            )

        if ctx.system.is_mounted(self._mountpoint):
            self._adopt_mounted()
            return

        try:
            self._mounter.mount(self)
        except NoSuitableFilesystem:
            ctx.broadcaster.send_broadcast(
                ResponseCode.VOLUME_MOUNT_FAILED_BLANK,
                f'Volume {self._label} {self._mountpoint} mount failed - blank',
            )
            raise
        except UnrecoverableMediaError:
            ctx.broadcaster.send_broadcast(
                ResponseCode.VOLUME_MOUNT_FAILED_DAMAGED,
                f'Volume {self._label} {self._mountpoint} mount failed - damaged',
            )
            raise
        finally:
            if self._state is VolumeState.CHECKING:
                self.set_state(VolumeState.IDLE)

    def _adopt_mounted(self) -> None:
        log.warning(f'Volume {self._label} is idle but appears to be mounted - fixing')
        self.set_state(VolumeState.MOUNTED)

    def unmount(self, force: bool = False, revert_crypto: bool = False) -> None:
        """Unmount every mounted partition of the volume.

        :param force: Terminate processes keeping the volume busy.
        :param revert_crypto: Tear down the decrypted view of an encrypted volume
            afterwards.
        :raises InvalidStateError: The volume is not mounted.
        :raises OSError: Teardown failed. The volume is left ``MOUNTED`` if it is
            still usable and ``NO_MEDIA`` otherwise.
        :raises CryptoError: The decrypted view could not be torn down. The volume
            is unmounted nonetheless.
        """
        ctx = self._ctx
        loop = ctx.loop
        if loop.mounted and loop.image and _is_under(loop.image, self._mountpoint):
            log.info(f'Unmounting loop image {loop.image} living on {self._label}')
            unmount_loop(ctx, self._unmounter, force=True)

        if self._state is not VolumeState.MOUNTED:
            if not ctx.system.is_mounted(self._mountpoint):
                log.error(f'Volume {self._label} unmount request when not mounted')
                raise InvalidStateError(f'Volume {self._label} is not mounted', EINVAL)
            log.warning(
                f'Volume {self._label} unmount request when mounted, but not '
                f'{VolumeState.MOUNTED.description}. Trying anyways'
            )

        self.set_state(VolumeState.UNMOUNTING)
        # give clients some time to react
        ctx.sleep(ctx.config.unmount_grace)

        try:
            self._unmounter.teardown(self, force)
        except OSError:
            if self._state.transient:
                if self._mounted:
                    self.set_state(VolumeState.MOUNTED)
                else:
                    self.set_state(VolumeState.IDLE)
            raise
        log.info(f'{self._mountpoint} unmounted successfully')

        if self._state is not VolumeState.NO_MEDIA:
            self.set_state(VolumeState.IDLE)
        self._mounted.clear()
        self._targets.clear()
        self._filesystems.clear()
        if self._volume_type.per_partition_dirs:
            try:
                ctx.system.remove_dir(self._mountpoint)
            except OSError as e:
                log.debug(f'Unable to remove {self._mountpoint} ({e.strerror})')

        if revert_crypto and crypto.is_remapped(self, ctx):
            try:
                crypto.revert_volume(self, ctx)
            except CryptoError as e:
                log.error(f'Failed to revert encryption of {self._label} ({e})')
                raise

    def format(self) -> None:
        """Create a new filesystem on the volume.

        When the volume uses the whole disk, a partition table with a single
        partition spanning the disk is written first. The volume is ``IDLE``
        afterwards, whether formatting succeeded or not.
        """
        ctx = self._ctx
        if self._state is VolumeState.NO_MEDIA:
            raise MediaRemovedError(f'Volume {self._label} has no media')
        if self._state is not VolumeState.IDLE:
            raise InvalidStateError(
                f'Volume {self._label} is {self._state.description}', EBUSY
            )
        if ctx.system.is_mounted(self._mountpoint):
            self._adopt_mounted()
            raise InvalidStateError(f'Volume {self._label} is mounted', EBUSY)

        disk = self.disk.device
        if disk is None:
            raise MediaRemovedError(f'Volume {self._label} has no disk')
        whole_device = self._part_index == -1
        if whole_device:
            # the single partition created below
            partition = DeviceNumber(disk.major, disk.minor + 1)
        else:
            partition = self.disk.partition_device(self._part_index - 1)
            if partition is None:
                raise MediaRemovedError(
                    f'Volume {self._label} has no partition {self._part_index}'
                )
        driver = find_driver(ctx.drivers, ctx.config.format_filesystem)

        self.set_state(VolumeState.FORMATTING)
        try:
            if whole_device:
                self._write_partition_table(disk)
            device_path = ctx.device_path(partition.major, partition.minor)
            if self.debug:
                log.debug(f'Formatting volume {self._label} ({device_path})')
            label = None
            if self._volume_type is VolumeType.FLASH:
                label = ctx.config.recovery_media_label
            driver.format(device_path, label)
        except OSError as e:
            log.error(f'Failed to format {self._label} ({e.strerror})')
            raise
        finally:
            if self._state is VolumeState.FORMATTING:
                self.set_state(VolumeState.IDLE)
        log.info(f'Volume {self._label} formatted as {driver.name}')

    def _write_partition_table(self, disk: DeviceNumber) -> None:
        writer = self._ctx.partition_writer
        if writer is None:
            raise ConfigurationError('No partition table writer configured')
        descriptor = full_disk_descriptor(self._ctx.device_path(*disk))
        try:
            writer.apply(descriptor)
        except OSError as e:
            log.error(f'Failed to initialize MBR ({e.strerror})')
            raise

    def share(self, lun_file: StrPath) -> None:
        """Export the disk of the volume over USB mass storage.

        The device node path is written to the gadget ``lun_file``.
        """
        if self._state is VolumeState.NO_MEDIA:
            raise MediaRemovedError(f'Volume {self._label} has no media')
        if self._state is not VolumeState.IDLE:
            raise InvalidStateError(
                f'Volume {self._label} is {self._state.description}', EBUSY
            )
        node = self.device_node
        if node is None:
            raise MediaRemovedError(f'Volume {self._label} has no disk')
        self._ctx.system.write_text(lun_file, node)
        self.set_state(VolumeState.SHARED)
        log.info(f'Volume {self._label} shared via {lun_file}')

    def unshare(self, lun_file: StrPath) -> None:
        if self._state is not VolumeState.SHARED:
            raise InvalidStateError(f'Volume {self._label} is not shared', EINVAL)
        self._ctx.system.write_text(lun_file, '')
        self.set_state(VolumeState.IDLE)
        log.info(f'Volume {self._label} unshared')

    def mount_loop(self, image: StrPath) -> None:
        """Mount the disk image ``image`` at the mountpoint of the volume."""
        mount_loop(self._ctx, image, self._mountpoint)

    def unmount_loop(self, force: bool = False) -> None:
        unmount_loop(self._ctx, self._unmounter, force)

    def delete(self) -> None:
        """Release the volume for good.

        A mounted volume is force-unmounted first. A mount in progress is aborted
        at its next checkpoint.
        """
        if self._state is VolumeState.DELETING:
            log.warning(f'Volume {self._label} is already being deleted')
            return
        if self._state is VolumeState.MOUNTED or self._mounted:
            try:
                self.unmount(force=True)
            except OSError as e:
                log.error(f'Failed to unmount {self._label} before deletion ({e})')
        self.set_state(VolumeState.DELETING)
        log.info(f'Volume {self._label} deleted')

    def handle_block_event(self, event: BlockEvent) -> None:
        """Update the partition bookkeeping from a hotplug event of the disk
        backing this volume.
        """
        if self._state is VolumeState.DELETING:
            log.warning(f'Volume {self._label} is being deleted, ignoring {event}')
            return
        if self.debug:
            log.debug(f'Volume {self._label} handling {event}')

        if event.action is Action.CHANGE:
            log.debug(f'Volume {self._label} ignoring change event')
        elif event.is_disk and event.action is Action.ADD:
            self._disk_added(event)
        elif event.is_disk:
            self._disk_removed(event)
        elif event.action is Action.ADD:
            self._partition_added(event)
        else:
            self._partition_removed(event)

    def _create_node(self, device: DeviceNumber) -> None:
        path = self._ctx.device_path(device.major, device.minor)
        try:
            self._ctx.system.make_block_node(path, device)
        except OSError as e:
            log.error(f'Error making device node {path!r} ({e.strerror})')

    def _disk_added(self, event: BlockEvent) -> None:
        self.disk.disk_added(event.device, event.nparts)
        self._create_node(event.device)
        self._ctx.broadcaster.send_broadcast(
            ResponseCode.VOLUME_DISK_INSERTED,
            f'Volume {self._label} {self._mountpoint} disk inserted ({event.device})',
        )
        if self.disk.parts == 0:
            self.set_state(VolumeState.IDLE)
        else:
            self.set_state(VolumeState.PENDING)

    def _disk_removed(self, event: BlockEvent) -> None:
        broadcaster = self._ctx.broadcaster
        if self._state is VolumeState.CHECKING:
            # the mount in progress notices at its next checkpoint
            self.set_state(VolumeState.NO_MEDIA)
        elif self._state is VolumeState.MOUNTED or self._mounted:
            broadcaster.send_broadcast(
                ResponseCode.VOLUME_BAD_REMOVAL,
                f'Volume {self._label} {self._mountpoint} bad removal '
                f'({event.device})',
            )
            try:
                self.unmount(force=True)
            except OSError as e:
                log.error(f'Failed to unmount {self._label} on removal ({e})')

        broadcaster.send_broadcast(
            ResponseCode.VOLUME_DISK_REMOVED,
            f'Volume {self._label} {self._mountpoint} disk removed ({event.device})',
        )
        if self._state is not VolumeState.NO_MEDIA:
            self.set_state(VolumeState.NO_MEDIA)
        self.disk.clear()

    def _partition_index(self, event: BlockEvent) -> int | None:
        index = event.partn - 1
        if not 0 <= index < MAX_PARTS:
            log.error(
                f'Volume {self._label}: partition number {event.partn} out of range'
            )
            return None
        return index

    def _partition_added(self, event: BlockEvent) -> None:
        index = self._partition_index(event)
        if index is None:
            return
        self.disk.partition_added(index, event.device, event.partname)
        self._create_node(event.device)
        if self._state is VolumeState.PENDING and self.disk.complete:
            self.set_state(VolumeState.IDLE)

    def _partition_removed(self, event: BlockEvent) -> None:
        index = self._partition_index(event)
        if index is None:
            return
        if self._mounted.is_mounted(index):
            self._ctx.broadcaster.send_broadcast(
                ResponseCode.VOLUME_BAD_REMOVAL,
                f'Volume {self._label} {self._mountpoint} bad removal '
                f'({event.device})',
            )
            try:
                self._unmounter.unmount_partition(self, index)
            except OSError as e:
                log.error(f'Failed to unmount partition {index} of {self._label} ({e})')
                # the device is gone, a stale mount cannot be recovered
                self.forget_partition(index)
            if self._state is VolumeState.UNMOUNTING:
                if self._mounted:
                    self.set_state(VolumeState.MOUNTED)
                else:
                    self.set_state(VolumeState.IDLE)
        self.disk.partition_removed(index)

    def fs_label(self) -> str | None:
        """Return the filesystem label of the first device node of the volume."""
        partitions = PartitionEnumerator().enumerate(self)
        device = partitions.nodes[0].device
        return self._ctx.system.filesystem_label(
            self._ctx.device_path(device.major, device.minor)
        )

    def set_debug(self, enable: bool) -> None:
        self.debug = enable

    def record_partition(self, index: int, target: str, filesystem: str) -> None:
        """Record partition ``index`` as mounted at ``target`` by ``filesystem``."""
        self._mounted.set(index)
        self._targets[index] = target
        self._filesystems[index] = filesystem

    def forget_partition(self, index: int) -> None:
        self._mounted.clear(index)
        self._targets.pop(index, None)
        self._filesystems.pop(index, None)

    def partition_mountpoint(self, index: int) -> str:
        """Directory partition ``index`` is (or would be) mounted at."""
        if index in self._targets:
            return self._targets[index]
        if not self._volume_type.per_partition_dirs:
            return self._mountpoint
        if index == WHOLE_DISK:
            return join_path(self._mountpoint, self._label)
        label = self.disk.partition_label(index)
        if not label:
            return self._mountpoint
        return join_path(self._mountpoint, label)

    @property
    def state(self) -> VolumeState:
        return self._state

    @property
    def label(self) -> str:
        return self._label

    @property
    def mountpoint(self) -> str:
        return self._mountpoint

    @property
    def volume_type(self) -> VolumeType:
        return self._volume_type

    @property
    def flags(self) -> VolumeFlags:
        return self._flags

    @property
    def part_index(self) -> int:
        return self._part_index

    @property
    def paths(self) -> tuple[str, ...]:
        return self._paths

    @property
    def has_asec(self) -> bool:
        """Whether the volume hosts the secure container directory.

        Only the primary storage volume can.
        """
        return self._has_asec

    @has_asec.setter
    def has_asec(self, value: bool) -> None:
        if value and not self._ctx.is_primary(self._mountpoint):
            raise ConfigurationError(
                f'Volume {self._label} is not the primary storage and cannot host '
                f'secure containers'
            )
        self._has_asec = value

    @property
    def mounted_partitions(self) -> PartitionMap:
        """Partitions currently mounted. Modified in place as partitions are
        mounted and unmounted.
        """
        return self._mounted

    @property
    def valid_partitions(self) -> PartitionMap:
        return self.disk.valid

    @property
    def filesystems(self) -> dict[int, str]:
        """Name of the filesystem driver that mounted each partition."""
        return dict(self._filesystems)

    @property
    def device_node(self) -> str | None:
        """Path of the device node of the disk currently backing the volume.

        While an encrypted volume is remapped, this is the node of the decrypted
        view.
        """
        if self.disk.node_path is not None:
            return self.disk.node_path
        device = self.disk.device
        if device is None:
            return None
        return self._ctx.device_path(device.major, device.minor)

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(label={self._label!r}, '
            f'mountpoint={self._mountpoint!r}, state={self._state.name})'
        )
