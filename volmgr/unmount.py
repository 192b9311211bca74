"""Teardown of mounted volumes.

Busy mounts are retried a bounded number of times. When forcing, processes
holding files under the mount are signalled with increasing severity between
attempts. Teardown of the obscured primary storage is transactional: if a step
fails, the steps already undone are redone so that the volume stays usable.
"""

from __future__ import annotations

import logging
from errno import EBUSY, EINVAL, ENOENT
from typing import TYPE_CHECKING, Callable

from . import compat, crypto, secure
from .base import WHOLE_DISK, BusyError, CryptoError
from .process import Signal
from .state import VolumeState

if TYPE_CHECKING:
    from .context import RetryPolicy, VolumeContext
    from .volume import Volume

__all__ = ["UnmountOrchestrator"]


log = logging.getLogger(__name__)


NOT_MOUNTED_ERRNOS = (EINVAL, ENOENT)


def _escalation(policy: RetryPolicy, failures: int, force: bool) -> Signal:
    """Signal to send to holders after ``failures`` failed attempts."""
    if not force:
        return Signal.NONE
    if failures >= policy.kill_after:
        return Signal.KILL
    if failures >= policy.hangup_after:
        return Signal.HANGUP
    return Signal.NONE


class UnmountOrchestrator:
    """Move, unmount and tear down mounts of volumes sharing ``ctx``."""

    def __init__(self, ctx: VolumeContext):
        self._ctx = ctx

    def _retry(
        self,
        operation: Callable[[], None],
        policy: RetryPolicy,
        holder_path: str,
        force: bool,
        what: str,
    ) -> None:
        """Run ``operation`` until it succeeds, retrying on ``EBUSY``.

        Any other ``OSError`` is raised immediately. ``BusyError`` is raised once
        all attempts of ``policy`` are used up.
        """
        ctx = self._ctx
        for attempt in range(1, policy.attempts + 1):
            try:
                operation()
            except OSError as e:
                if e.errno != EBUSY:
                    raise
                remaining = policy.attempts - attempt
                if remaining == 0:
                    break
                strength = _escalation(policy, attempt, force)
                log.warning(
                    f"Failed to {what} ({e.strerror}, retries {remaining}, "
                    f"action {strength.name})"
                )
                if strength is not Signal.NONE:
                    ctx.terminator.terminate_holders_of(holder_path, strength)
                ctx.sleep(policy.interval)
                continue
            return

        log.error(f"Giving up on {what}")
        raise BusyError(f"Giving up on {what}")

    def move_mount(self, source: str, target: str, force: bool = False) -> None:
        """Atomically move the mount at ``source`` to ``target``."""
        what = f"move {source} -> {target}"
        try:
            self._retry(
                lambda: self._ctx.system.move_mount(source, target),
                self._ctx.config.move_policy,
                source,
                force,
                what,
            )
        except BusyError:
            raise
        except OSError as e:
            log.error(f"Failed to move mount {source} -> {target} ({e.strerror})")
            raise
        log.debug(f"Moved mount {source} -> {target} successfully")

    def unmount_path(self, path: str, force: bool = False) -> None:
        """Unmount ``path``. A path which is not mounted counts as success."""

        def unmount() -> None:
            try:
                self._ctx.system.unmount(path)
            except OSError as e:
                if e.errno in NOT_MOUNTED_ERRNOS:
                    return
                raise

        log.debug(f"Unmounting {{{path}}}, force = {force}")
        try:
            self._retry(
                unmount, self._ctx.config.unmount_policy, path, force, f"unmount {path}"
            )
        except BusyError:
            raise
        except OSError as e:
            log.error(f"Failed to unmount {path} ({e.strerror})")
            raise
        log.info(f"{path} successfully unmounted")

    def teardown(self, volume: Volume, force: bool = False) -> None:
        """Unmount every partition recorded as mounted on ``volume``.

        Partitions are released lowest index first, the whole disk before any
        indexed partition. On failure the volume is left ``MOUNTED`` (still
        usable) or ``NO_MEDIA`` (unrecoverable) and the error is raised.
        """
        ctx = self._ctx
        mounted = volume.mounted_partitions

        if volume.fake_sdcard_partition is not None:
            compat.withdraw_fake_sdcard(volume, ctx)

        if not mounted and ctx.system.is_mounted(volume.mountpoint):
            log.warning(
                f"Volume {volume.label} has no recorded partitions but "
                f"{volume.mountpoint} is mounted"
            )
            if volume.has_asec:
                self._teardown_obscured(volume, force)
                ctx.legacy.sdcard_mounted = False
            else:
                self._unmount_or_restore(volume, volume.mountpoint)
            return

        while mounted:
            index = mounted.lowest()
            assert index is not None  # skipcq: BAN-B101
            if volume.debug:
                log.debug(
                    f"Volume {volume.label} unmounting partitions={mounted!r} "
                    f"type={volume.volume_type.name} index={index}"
                )

            if volume.has_asec:
                self._teardown_obscured(volume, force)
                volume.forget_partition(index)
                ctx.legacy.sdcard_mounted = False
            elif volume.volume_type.single_mount:
                # only one partition is ever mounted from flash or sdcard
                self._unmount_or_restore(volume, volume.mountpoint)
                for mounted_index in list(mounted):
                    volume.forget_partition(mounted_index)
                ctx.legacy.flash_mounted = False
            elif index == WHOLE_DISK:
                path = volume.partition_mountpoint(WHOLE_DISK)
                self._unmount_or_restore(volume, path)
                self._remove_dir(path)
                volume.forget_partition(WHOLE_DISK)
            else:
                try:
                    self.unmount_partition(volume, index)
                except OSError:
                    if volume.mounted_partitions.is_mounted(index):
                        self._restore_mounted(volume)
                    raise

    def unmount_partition(self, volume: Volume, index: int) -> None:
        """Unmount the single partition ``index`` of ``volume``.

        The volume is moved to ``UNMOUNTING`` if it is not already there; the
        caller is responsible for the final state.
        """
        ctx = self._ctx
        if not volume.mounted_partitions.is_mounted(index):
            return
        if volume.state is not VolumeState.UNMOUNTING:
            volume.set_state(VolumeState.UNMOUNTING)

        if index == volume.fake_sdcard_partition:
            compat.withdraw_fake_sdcard(volume, ctx)
            return

        path = volume.partition_mountpoint(index)
        log.info(f"Unmounting partition {index} of {volume.label} at {path}")
        self.unmount_path(path, force=True)

        if not volume.volume_type.single_mount and path != volume.mountpoint:
            self._remove_dir(path)
        volume.forget_partition(index)

        if crypto.is_remapped(volume, ctx):
            try:
                crypto.revert_volume(volume, ctx)
            except CryptoError as e:
                log.error(f"Failed to revert encryption of {volume.label} ({e})")
                raise

    def _remove_dir(self, path: str) -> None:
        try:
            self._ctx.system.remove_dir(path)
        except OSError as e:
            log.warning(f"Unable to remove {path} ({e.strerror})")

    def _restore_mounted(self, volume: Volume) -> None:
        if volume.state is VolumeState.UNMOUNTING:
            volume.set_state(VolumeState.MOUNTED)

    def _unmount_or_restore(self, volume: Volume, path: str) -> None:
        try:
            self.unmount_path(path, force=True)
        except OSError as e:
            log.error(f"Failed to unmount {path} ({e.strerror})")
            self._restore_mounted(volume)
            raise

    def _teardown_obscured(self, volume: Volume, force: bool) -> None:
        """Reverse the obscuring bind mount sequence of the primary storage."""
        ctx = self._ctx
        config = ctx.config

        # move the mount back to staging so nobody else can muck with it
        try:
            self.move_mount(volume.mountpoint, config.staging_dir, force)
        except OSError as e:
            log.error(
                f"Failed to move mount {volume.mountpoint} => {config.staging_dir} "
                f"({e.strerror})"
            )
            self._restore_mounted(volume)
            raise

        secure.remove_autorun(ctx)

        rollback: list[tuple[str, Callable[[VolumeContext], None]]] = []
        try:
            self.unmount_path(config.secure_image_dir, force)
            rollback.append(("tmpfs", secure.obscure_secure_dir))
            self.unmount_path(config.asec_dir, force)
            rollback.append(("bind mount", secure.bind_secure_dir))
            self.unmount_path(config.staging_dir, force)
        except OSError as e:
            log.error(f"Failed to tear down {volume.mountpoint} ({e.strerror})")
            self._roll_back(volume, rollback, force)
            raise

    def _roll_back(
        self,
        volume: Volume,
        rollback: list[tuple[str, Callable[[VolumeContext], None]]],
        force: bool,
    ) -> None:
        """Redo the undone obscuring steps and republish the mount.

        Leaves the volume ``MOUNTED`` on success and ``NO_MEDIA`` otherwise.
        """
        ctx = self._ctx
        try:
            for name, redo in reversed(rollback):
                log.warning(f"Restoring {name} of {volume.label}")
                redo(ctx)
            self.move_mount(ctx.config.staging_dir, volume.mountpoint, force)
        except OSError as e:
            log.error(
                f"Failed to restore {volume.label} after failure ({e.strerror})! - "
                f"Storage will appear offline!"
            )
            volume.set_state(VolumeState.NO_MEDIA)
            return
        volume.set_state(VolumeState.MOUNTED)
