"""Legacy single-mountpoint emulation.

Older clients only know a single storage location (``Config.legacy_sdcard_path``).
Two emulations expose modern volumes there:

- *fake sdcard*: the first flash partition mounted while no canonical sdcard is
  mounted is handed over to the volume owning the legacy location by publishing
  a synthetic hotplug "add" event; its own directory becomes a symlink to the
  legacy location.
- *virtual sdcard*: a directory on the first mounted flash volume is linked to
  the legacy location and announced with a synthetic state change.
"""

from __future__ import annotations

import logging
from errno import EINVAL, ENOENT
from typing import TYPE_CHECKING

from .base import join_path
from .broadcast import ResponseCode
from .hotplug import Action, fake_sdcard_event
from .state import VolumeState

if TYPE_CHECKING:
    from .base import DeviceNumber
    from .context import VolumeContext
    from .partitions import PartitionNode
    from .volume import Volume

__all__ = [
    "publish_fake_sdcard",
    "withdraw_fake_sdcard",
    "link_virtual_sdcard",
    "unlink_virtual_sdcard",
]


log = logging.getLogger(__name__)


def _publish_event(ctx: VolumeContext, action: Action, device: DeviceNumber) -> None:
    event = fake_sdcard_event(action, ctx.config.fake_sdcard_devpath, device)
    log.debug(f"Fake sdcard event: {event}")
    if ctx.hotplug is None:
        log.warning("No hotplug sink configured, dropping fake sdcard event")
        return
    ctx.hotplug.handle_block_event(event)


def _broadcast_virtual_state(
    ctx: VolumeContext, old: VolumeState, new: VolumeState
) -> None:
    label = ctx.config.virtual_sdcard_label
    path = ctx.config.legacy_sdcard_path
    log.debug(
        f"Virtual sdcard: volume {label} state changing {old.value} "
        f"({old.description}) -> {new.value} ({new.description})"
    )
    ctx.broadcaster.send_broadcast(
        ResponseCode.VOLUME_STATE_CHANGE,
        f"Volume {label} {path} state changed from {old.value} "
        f"({old.description}) to {new.value} ({new.description})",
    )


def publish_fake_sdcard(
    volume: Volume, ctx: VolumeContext, node: PartitionNode, mount_pointer: str
) -> bool:
    """Hand the partition ``node`` freshly mounted at ``mount_pointer`` over to the
    legacy sdcard volume.

    Returns whether the partition was handed over. The partition stays recorded
    as mounted on ``volume``.
    """
    if not ctx.config.fake_sdcard or ctx.legacy.sdcard_mounted:
        return False
    if volume.fake_sdcard_partition is not None:
        return False

    try:
        ctx.system.unmount(mount_pointer)
    except OSError as e:
        if e.errno not in (EINVAL, ENOENT):
            log.error(f"Unable to release {mount_pointer} for fake sdcard ({e})")
            return False
    try:
        ctx.system.remove_dir(mount_pointer)
    except OSError as e:
        log.warning(f"Unable to remove {mount_pointer} ({e.strerror})")

    _publish_event(ctx, Action.ADD, node.device)
    try:
        ctx.system.symlink(ctx.config.legacy_sdcard_path, mount_pointer)
    except OSError as e:
        log.error(f"Unable to link {mount_pointer} to fake sdcard ({e.strerror})")
    volume.fake_sdcard_link = mount_pointer
    volume.fake_sdcard_partition = node.index
    volume.fake_sdcard_device = node.device
    log.info(f"Partition {node.device} of {volume.label} published as fake sdcard")
    return True


def withdraw_fake_sdcard(volume: Volume, ctx: VolumeContext) -> None:
    """Undo ``publish_fake_sdcard()``: publish the "remove" event, delete the
    symlink and forget the partition.
    """
    index = volume.fake_sdcard_partition
    device = volume.fake_sdcard_device
    if index is None or device is None:
        return

    _publish_event(ctx, Action.REMOVE, device)
    link = volume.fake_sdcard_link
    if link:
        try:
            ctx.system.remove_file(link)
        except OSError as e:
            log.warning(f"Unable to remove fake sdcard link {link} ({e.strerror})")
    volume.mounted_partitions.clear(index)
    volume.fake_sdcard_link = None
    volume.fake_sdcard_partition = None
    volume.fake_sdcard_device = None
    log.info(f"Fake sdcard of {volume.label} withdrawn")


def link_virtual_sdcard(ctx: VolumeContext, mount_pointer: str) -> bool:
    """Expose a directory of the flash volume mounted at ``mount_pointer`` at the
    legacy location.

    Returns whether the link was created.
    """
    config, legacy = ctx.config, ctx.legacy
    if not config.virtual_sdcard:
        return False
    if legacy.virtual_sdcard_mounted or legacy.sdcard_mounted:
        return False

    target = join_path(mount_pointer, config.virtual_sdcard_dir_name)
    log.warning(f"Virtual sdcard: symlink {config.legacy_sdcard_path} -> {target}")
    try:
        ctx.system.remove_dir(config.legacy_sdcard_path)
    except OSError:
        pass
    try:
        ctx.system.make_dir(target)
        ctx.system.symlink(target, config.legacy_sdcard_path)
    except OSError as e:
        log.error(f"Unable to link virtual sdcard ({e.strerror})")
        return False

    _broadcast_virtual_state(ctx, VolumeState.IDLE, VolumeState.MOUNTED)
    legacy.virtual_sdcard_mounted = True
    return True


def unlink_virtual_sdcard(ctx: VolumeContext) -> None:
    """Replace the virtual sdcard link by a plain directory so that real media
    can be mounted at the legacy location.
    """
    config, legacy = ctx.config, ctx.legacy
    if not (config.virtual_sdcard and legacy.virtual_sdcard_mounted):
        return
    try:
        ctx.system.remove_file(config.legacy_sdcard_path)
    except OSError as e:
        log.warning(f"Unable to remove virtual sdcard link ({e.strerror})")
    try:
        ctx.system.make_dir(config.legacy_sdcard_path)
    except OSError as e:
        log.error(f"Unable to create {config.legacy_sdcard_path} ({e.strerror})")
    _broadcast_virtual_state(ctx, VolumeState.MOUNTED, VolumeState.IDLE)
    legacy.virtual_sdcard_mounted = False
