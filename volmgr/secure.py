"""Steps of the obscuring bind mount performed on the staged primary storage.

While the media is mounted at ``Config.staging_dir`` -- invisible to
unprivileged users -- the secure container directory on it is bind-mounted to
the root-only ``Config.asec_dir`` and then hidden below a zero-sized read-only
tmpfs. Only then is the staging mount moved to the public mountpoint.
"""

from __future__ import annotations

import logging
from errno import ENOTDIR
from os import strerror
from typing import TYPE_CHECKING

from .process import Signal
from .system import MountFlags

if TYPE_CHECKING:
    from .context import VolumeContext

__all__ = [
    "remove_autorun",
    "prepare_secure_dir",
    "bind_secure_dir",
    "obscure_secure_dir",
    "create_bind_mounts",
]


log = logging.getLogger(__name__)


TMPFS_OPTIONS = "size=0,mode=000,uid=0,gid=0"


def remove_autorun(ctx: VolumeContext) -> None:
    """Delete an ``autorun.inf`` from the staged media, killing processes holding
    it open first.
    """
    path = ctx.config.autorun_file
    if not ctx.system.exists(path):
        return
    log.warning(f"Volume contains an {ctx.config.autorun_file_name}! - removing")
    ctx.terminator.terminate_holders_of(path, Signal.KILL)
    try:
        ctx.system.remove_file(path)
    except OSError as e:
        log.error(f"Failed to remove {path} ({e.strerror})")


def prepare_secure_dir(ctx: VolumeContext) -> None:
    """Make sure the secure container directory exists on the staged media.

    A directory using the legacy name is renamed first.
    """
    system = ctx.system
    secure_dir = ctx.config.secure_image_dir
    legacy_dir = ctx.config.legacy_image_dir

    if system.is_dir(legacy_dir) and not system.exists(secure_dir):
        try:
            system.rename(legacy_dir, secure_dir)
        except OSError as e:
            log.error(f"Failed to rename legacy secure dir ({e.strerror})")

    if not system.exists(secure_dir):
        system.make_dir(secure_dir, 0o777)
    elif not system.is_dir(secure_dir):
        log.error(f"{secure_dir} is not a directory")
        raise NotADirectoryError(ENOTDIR, strerror(ENOTDIR), secure_dir)


def bind_secure_dir(ctx: VolumeContext) -> None:
    """Bind-mount the secure container directory to the root-only location."""
    config = ctx.config
    ctx.system.mount(config.secure_image_dir, config.asec_dir, "", MountFlags.BIND)


def obscure_secure_dir(ctx: VolumeContext) -> None:
    """Hide the secure container directory below an empty read-only tmpfs."""
    ctx.system.mount(
        "tmpfs",
        ctx.config.secure_image_dir,
        "tmpfs",
        MountFlags.RDONLY,
        TMPFS_OPTIONS,
    )


def create_bind_mounts(ctx: VolumeContext) -> None:
    """Run the whole obscuring sequence on the staged media.

    On failure nothing created by this function is left mounted and the
    ``OSError`` is propagated.
    """
    config = ctx.config
    prepare_secure_dir(ctx)
    try:
        bind_secure_dir(ctx)
    except OSError as e:
        log.error(
            f"Failed to bind mount points {config.secure_image_dir} -> "
            f"{config.asec_dir} ({e.strerror})"
        )
        raise
    try:
        obscure_secure_dir(ctx)
    except OSError as e:
        log.error(f"Failed to obscure {config.secure_image_dir} ({e.strerror})")
        try:
            ctx.system.unmount(config.asec_dir)
        except OSError as e2:
            log.error(f"Failed to remove bind mount {config.asec_dir} ({e2.strerror})")
        raise
