"""Encrypted volume integration.

On an encrypted device the primary storage volume is backed by an encrypted
block device. Before mounting, the raw device is handed to the ``CryptoMapper``
which sets up a decrypted view of it; from then on the volume mounts the
decrypted device node instead of the raw one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from .base import ConfigurationError, CryptoError, DeviceNumber
from .state import VolumeFlags

if TYPE_CHECKING:
    from .context import VolumeContext
    from .partitions import PartitionEnumerator, PartitionSet
    from .volume import Volume

__all__ = [
    "CryptoMapper",
    "CRYPTO_STATE_ENCRYPTED",
    "needs_remap",
    "is_remapped",
    "remap_volume",
    "revert_volume",
]


log = logging.getLogger(__name__)


CRYPTO_STATE_ENCRYPTED = "encrypted"
REQUIRED_FLAGS = VolumeFlags.NONREMOVABLE | VolumeFlags.ENCRYPTABLE


class CryptoMapper(Protocol):
    """Block device encryption subsystem."""

    def setup_volume(self, label: str, major: int, minor: int) -> tuple[str, int, int]:
        """Map the raw device ``major:minor`` to a decrypted view.

        Returns a ``tuple`` of (sysfs path, major, minor) of the decrypted device.
        Raises ``OSError`` on failure.
        """
        ...

    def revert_volume(self, label: str) -> None:
        """Tear down the mapping set up for ``label``."""
        ...

    def is_remapped(self, label: str) -> bool:
        ...


def is_remapped(volume: Volume, ctx: VolumeContext) -> bool:
    """Whether ``volume`` currently mounts a decrypted view of its device."""
    return ctx.crypto is not None and ctx.crypto.is_remapped(volume.label)


def needs_remap(volume: Volume, ctx: VolumeContext) -> bool:
    """Whether ``volume`` must be remapped before mounting.

    This is the case for the nonremovable, encryptable primary storage volume on
    an encrypted system which has not been remapped yet.
    """
    return (
        ctx.crypto is not None
        and ctx.is_primary(volume.mountpoint)
        and REQUIRED_FLAGS in volume.flags
        and ctx.config.crypto_state == CRYPTO_STATE_ENCRYPTED
        and not ctx.crypto.is_remapped(volume.label)
    )


def remap_volume(
    volume: Volume,
    ctx: VolumeContext,
    partitions: PartitionSet,
    enumerator: PartitionEnumerator,
) -> PartitionSet:
    """Substitute the raw device of ``volume`` by its decrypted view.

    Exactly one raw device node is expected; otherwise ``ConfigurationError`` is
    raised before the crypto mapper is involved. Returns the re-enumerated
    partitions of the decrypted device.
    """
    assert ctx.crypto is not None  # skipcq: BAN-B101
    if len(partitions.nodes) != 1:
        log.error(
            f"Too many device nodes returned when mounting {volume.mountpoint} "
            f"({len(partitions.nodes)})"
        )
        raise ConfigurationError(
            f"Encrypted volume {volume.label} must provide exactly one device node"
        )

    raw = partitions.nodes[0].device
    try:
        _, major, minor = ctx.crypto.setup_volume(volume.label, raw.major, raw.minor)
    except OSError as e:
        log.error(f"Cannot setup encryption mapping for {volume.mountpoint} ({e})")
        raise CryptoError(
            f"Cannot setup encryption mapping for {volume.mountpoint}"
        ) from e

    device = DeviceNumber(major, minor)
    node_path = ctx.device_path(major, minor)
    if not ctx.system.exists(node_path):
        try:
            ctx.system.make_block_node(node_path, device)
        except OSError as e:
            log.error(f"Error making device node {node_path!r} ({e.strerror})")

    volume.disk.substitute(node_path, device)
    log.info(f"Volume {volume.label} remapped from {raw} to {device}")
    return enumerator.enumerate(volume)


def revert_volume(volume: Volume, ctx: VolumeContext) -> bool:
    """Tear down the decrypted view of ``volume`` and restore the raw device.

    Returns whether a mapping was reverted.
    """
    if not is_remapped(volume, ctx):
        return False
    assert ctx.crypto is not None  # skipcq: BAN-B101
    try:
        ctx.crypto.revert_volume(volume.label)
    except OSError as e:
        raise CryptoError(f"Cannot revert encryption mapping for {volume.label}") from e
    volume.disk.revert()
    log.info(f"Encrypted volume {volume.mountpoint} reverted successfully")
    return True
