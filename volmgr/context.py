"""Configuration and the shared context handed to volumes and orchestrators.

A ``VolumeContext`` bundles the external collaborators, the immutable ``Config``
and the few pieces of mutable state shared by all volumes of one manager
(legacy sdcard emulation and the loop device). Independent managers -- for
example in tests -- simply use independent contexts.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, NamedTuple

from .base import join_path

if TYPE_CHECKING:
    from .broadcast import EventBroadcaster
    from .crypto import CryptoMapper
    from .filesystem import FilesystemDriver
    from .hotplug import HotplugSink
    from .process import ProcessTerminator
    from .system import MountSystem
    from .table import PartitionTableWriter
    from .typing import Sleeper

__all__ = ["RetryPolicy", "Config", "LegacyState", "LoopState", "VolumeContext"]


TRUE_STRINGS = ("1", "true", "yes", "on")


class RetryPolicy(NamedTuple):
    """Bounded retry loop with escalating process termination.

    - ``attempts``: Total number of attempts.
    - ``interval``: Seconds to sleep after a failed attempt.
    - ``hangup_after``: Number of failed attempts after which holders receive
      ``Signal.HANGUP`` (only when forcing).
    - ``kill_after``: Number of failed attempts after which holders receive
      ``Signal.KILL`` (only when forcing).
    """

    attempts: int
    interval: float
    hangup_after: int
    kill_after: int


@dataclass(frozen=True)
class Config:
    """Static settings of a volume manager."""

    # mountpoint of the primary external storage, if any
    primary_storage: str | None = None
    # system-wide crypto state, "encrypted" triggers the crypto remap
    crypto_state: str = ""
    fake_sdcard: bool = False
    virtual_sdcard: bool = False

    device_dir: str = "/dev/block/vold"
    secure_dir: str = "/mnt/secure"
    staging_dir: str = "/mnt/secure/staging"
    asec_dir: str = "/mnt/secure/asec"
    secure_image_dir_name: str = ".android_secure"
    legacy_image_dir_name: str = "android_secure"
    autorun_file_name: str = "autorun.inf"
    legacy_sdcard_path: str = "/mnt/sdcard"
    virtual_sdcard_dir_name: str = ".vsdcard"
    virtual_sdcard_label: str = "sdcard"
    fake_sdcard_devpath: str = "/devices/virtual/block/fakesdcard"
    loop_device: str = "/dev/block/loop0"

    move_policy: RetryPolicy = RetryPolicy(5, 0.25, 3, 4)
    unmount_policy: RetryPolicy = RetryPolicy(20, 1.0, 4, 5)
    unmount_grace: float = 1.0
    node_wait_timeout: float = 25.0
    node_wait_interval: float = 0.5

    owner_uid: int = 1000  # AID_SYSTEM
    sdcard_rw_gid: int = 1015  # AID_SDCARD_RW
    media_rw_gid: int = 1023  # AID_MEDIA_RW
    permission_mask: int = 0o002

    format_filesystem: str = "vfat"
    recovery_media_label: str | None = None

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] = None, **overrides) -> Config:
        """Build a ``Config`` from environment variables.

        Recognized variables are ``EXTERNAL_STORAGE``, ``VOLMGR_CRYPTO_STATE``,
        ``VOLMGR_FAKE_SDCARD``, ``VOLMGR_VIRTUAL_SDCARD`` and
        ``VOLMGR_DEVICE_DIR``. Keyword arguments take precedence.
        """
        if environ is None:
            environ = os.environ

        def flag(name: str) -> bool:
            return environ.get(name, "").strip().lower() in TRUE_STRINGS

        values: dict = {
            "primary_storage": environ.get("EXTERNAL_STORAGE") or None,
            "crypto_state": environ.get("VOLMGR_CRYPTO_STATE", ""),
            "fake_sdcard": flag("VOLMGR_FAKE_SDCARD"),
            "virtual_sdcard": flag("VOLMGR_VIRTUAL_SDCARD"),
        }
        if environ.get("VOLMGR_DEVICE_DIR"):
            values["device_dir"] = environ["VOLMGR_DEVICE_DIR"]
        values.update(overrides)
        return cls(**values)

    @property
    def secure_image_dir(self) -> str:
        """Directory on the staged media holding secure container images."""
        return join_path(self.staging_dir, self.secure_image_dir_name)

    @property
    def legacy_image_dir(self) -> str:
        return join_path(self.staging_dir, self.legacy_image_dir_name)

    @property
    def autorun_file(self) -> str:
        return join_path(self.staging_dir, self.autorun_file_name)


@dataclass
class LegacyState:
    """Cross-volume flags of the legacy sdcard emulation."""

    sdcard_mounted: bool = False
    virtual_sdcard_mounted: bool = False
    flash_mounted: bool = False


@dataclass
class LoopState:
    """Loopback image currently attached to ``Config.loop_device``."""

    image: str | None = None
    mountpoint: str | None = None

    @property
    def mounted(self) -> bool:
        return self.image is not None


def _default_terminator() -> ProcessTerminator:
    from .process import ProcfsTerminator

    return ProcfsTerminator()


@dataclass
class VolumeContext:
    """Collaborators, configuration and shared state of one volume manager.

    ``drivers`` is the ordered filesystem detection cascade.
    """

    system: MountSystem
    broadcaster: EventBroadcaster
    drivers: list[FilesystemDriver] = field(default_factory=list)
    terminator: ProcessTerminator = field(default_factory=_default_terminator)
    crypto: CryptoMapper | None = None
    hotplug: HotplugSink | None = None
    partition_writer: PartitionTableWriter | None = None
    config: Config = field(default_factory=Config)
    legacy: LegacyState = field(default_factory=LegacyState)
    loop: LoopState = field(default_factory=LoopState)
    sleep: Sleeper = time.sleep

    @classmethod
    def for_linux(
        cls, broadcaster: EventBroadcaster, config: Config = None, **kwargs
    ) -> VolumeContext:
        """Build a context operating on the running Linux kernel."""
        from .linux import LinuxMountSystem

        if config is None:
            config = Config.from_environ()
        return cls(LinuxMountSystem(), broadcaster, config=config, **kwargs)

    def is_primary(self, mountpoint: str) -> bool:
        """Whether ``mountpoint`` belongs to the primary external storage."""
        primary = self.config.primary_storage
        return primary is not None and mountpoint == primary

    def device_path(self, major: int, minor: int) -> str:
        """Path of the device node for ``major:minor`` in the device directory."""
        return join_path(self.config.device_dir, f"{major}:{minor}")
