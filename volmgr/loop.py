"""Mounting of disk images through the loop device of the context.

Only one image can be attached at a time; ``VolumeContext.loop`` records which
one and where it is mounted.
"""

from __future__ import annotations

import logging
from errno import EBUSY, EINVAL, ETIMEDOUT
from os import strerror
from typing import TYPE_CHECKING

from .base import InvalidStateError
from .filesystem import MountOptions, mount_filesystem
from .partitions import wait_for_node

if TYPE_CHECKING:
    from .context import VolumeContext
    from .typing import StrPath
    from .unmount import UnmountOrchestrator

__all__ = ["mount_loop", "unmount_loop"]


log = logging.getLogger(__name__)


def mount_loop(ctx: VolumeContext, image: StrPath, mountpoint: str) -> None:
    """Attach ``image`` to the loop device and mount it at ``mountpoint``.

    :raises InvalidStateError: An image is already attached.
    :raises TimeoutError: The loop device node did not appear in time.
    :raises OSError: Attaching or mounting failed. The image is detached again.
    """
    config, loop = ctx.config, ctx.loop
    image = str(image)
    if loop.mounted:
        log.warning(f"Loop image {loop.image} already mounted, unmount it first")
        raise InvalidStateError(f"Loop image {loop.image} already mounted", EBUSY)

    if not wait_for_node(
        ctx.system,
        config.loop_device,
        config.node_wait_timeout,
        config.node_wait_interval,
        ctx.sleep,
    ):
        raise TimeoutError(ETIMEDOUT, strerror(ETIMEDOUT), config.loop_device)

    ctx.system.attach_loop(config.loop_device, image)
    log.debug(f"Loop device {config.loop_device} attached to {image}")

    try:
        ctx.system.make_dir(mountpoint)
        mount_filesystem(
            ctx.drivers,
            config.loop_device,
            mountpoint,
            MountOptions(
                owner_uid=config.owner_uid,
                owner_gid=config.sdcard_rw_gid,
                permission_mask=config.permission_mask,
            ),
        )
    except OSError:
        log.warning(f"Loop mount of {image} failed")
        try:
            ctx.system.remove_dir(mountpoint)
        except OSError as e:
            log.debug(f"Unable to remove {mountpoint} ({e.strerror})")
        ctx.system.detach_loop(config.loop_device)
        raise

    loop.image = image
    loop.mountpoint = mountpoint
    log.info(f"Loop image {image} mounted at {mountpoint}")


def unmount_loop(
    ctx: VolumeContext, unmounter: UnmountOrchestrator, force: bool = False
) -> None:
    """Unmount and detach the image attached by ``mount_loop()``."""
    loop = ctx.loop
    if not loop.mounted:
        log.warning("No loop image mounted")
        raise InvalidStateError("No loop image mounted", EINVAL)
    assert loop.mountpoint is not None  # skipcq: BAN-B101

    unmounter.unmount_path(loop.mountpoint, force)
    try:
        ctx.system.remove_dir(loop.mountpoint)
    except OSError as e:
        log.debug(f"Unable to remove {loop.mountpoint} ({e.strerror})")
    try:
        ctx.system.detach_loop(ctx.config.loop_device)
    except OSError as e:
        log.error(f"Unable to detach {ctx.config.loop_device} ({e.strerror})")

    log.info(f"Loop image {loop.image} unmounted")
    loop.image = None
    loop.mountpoint = None
