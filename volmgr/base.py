"""Exception classes, data structures and helper functions used across ``volmgr``."""

from __future__ import annotations

import os
from errno import EBUSY, EINVAL, EIO, ENAMETOOLONG, ENODATA, ENODEV, ENOENT
from typing import Iterator, NamedTuple

__all__ = [
    'VolumeError',
    'ConfigurationError',
    'InvalidStateError',
    'NoSuitableFilesystem',
    'UnrecoverableMediaError',
    'BusyError',
    'MediaRemovedError',
    'VolumeDeletedError',
    'CryptoError',
    'VolumeNotFoundError',
    'DeviceNumber',
    'PartitionMap',
    'MAX_PARTS',
    'WHOLE_DISK',
    'PATH_MAX',
    'join_path',
]


MAX_PARTS = 16  # indexed partitions per volume
WHOLE_DISK = 31  # bit reserved for a disk without partition table
PATH_MAX = 4096


class VolumeError(OSError):
    """Base class of all exceptions raised by volume operations.

    Every subclass carries an ``errno`` so that a command dispatcher can translate
    the failure into a protocol response without inspecting the exception type.
    """

    code = EIO

    def __init__(self, message: str, code: int = None):
        super().__init__(self.code if code is None else code, message)


class ConfigurationError(VolumeError):
    """Exception raised if a volume is configured in a way that cannot work, for
    example an encrypted primary volume providing more than one device node.
    """

    code = EINVAL


class InvalidStateError(VolumeError):
    """Exception raised if an operation is requested in a state not allowing it."""

    code = EBUSY


class NoSuitableFilesystem(VolumeError):
    """Exception raised if every filesystem driver rejected every partition."""

    code = ENODATA


class UnrecoverableMediaError(VolumeError):
    """Exception raised if a filesystem driver reported an I/O failure.

    This is considered a hardware fault, so the whole mount attempt is aborted
    instead of trying the next driver.
    """

    code = EIO


class BusyError(VolumeError):
    """Exception raised if a resource stayed busy after all retries."""

    code = EBUSY


class MediaRemovedError(VolumeError):
    """Exception raised if the media is missing or vanished during an operation."""

    code = ENODEV


class VolumeDeletedError(VolumeError):
    """Exception raised if the volume was deleted during an operation."""

    code = ENODEV


class CryptoError(VolumeError):
    """Exception raised if the crypto mapper failed to set up or revert a mapping."""

    code = EIO


class VolumeNotFoundError(VolumeError):
    """Exception raised if no volume is known under the requested label."""

    code = ENOENT


class DeviceNumber(NamedTuple):
    """``NamedTuple`` of the major and minor number of a block device."""

    major: int
    minor: int

    @classmethod
    def from_dev(cls, dev: int) -> DeviceNumber:
        """Split a raw ``dev_t`` as found in ``os.stat_result.st_rdev``."""
        return cls(os.major(dev), os.minor(dev))

    @property
    def dev(self) -> int:
        """Raw ``dev_t`` value of the device number."""
        return os.makedev(self.major, self.minor)

    def __str__(self) -> str:
        return f'{self.major}:{self.minor}'


class PartitionMap:
    """Fixed-size set of partition indices.

    Indices ``0`` to ``MAX_PARTS - 1`` denote partitions of a partitioned disk,
    ``WHOLE_DISK`` denotes a disk mounted without a partition table.
    """

    SIZE = 32

    __slots__ = ('_bits',)

    def __init__(self, value: int = 0):
        if not 0 <= value < 1 << self.SIZE:
            raise ValueError(f'Partition map value out of range: {value:#x}')
        self._bits = value

    @classmethod
    def of(cls, *indices: int) -> PartitionMap:
        partition_map = cls()
        for index in indices:
            partition_map.set(index)
        return partition_map

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.SIZE:
            raise IndexError(f'Partition index must be in range (0, {self.SIZE - 1})')

    def is_mounted(self, index: int) -> bool:
        """Whether the partition ``index`` is contained in the map."""
        self._check_index(index)
        return bool(self._bits & (1 << index))

    is_set = is_mounted

    def set(self, index: int) -> None:
        self._check_index(index)
        self._bits |= 1 << index

    def clear(self, index: int = None) -> None:
        """Remove partition ``index`` from the map, or every partition if ``index``
        is ``None``.
        """
        if index is None:
            self._bits = 0
            return
        self._check_index(index)
        self._bits &= ~(1 << index)

    def lowest(self) -> int | None:
        """Return the next partition to process.

        ``WHOLE_DISK`` takes precedence over the indexed partitions. Returns ``None``
        if the map is empty.
        """
        if self.is_set(WHOLE_DISK):
            return WHOLE_DISK
        for index in self:
            return index
        return None

    def copy(self) -> PartitionMap:
        return PartitionMap(self._bits)

    @property
    def value(self) -> int:
        return self._bits

    def __iter__(self) -> Iterator[int]:
        """Iterate over the contained indices, lowest first."""
        return (i for i in range(self.SIZE) if self._bits & (1 << i))

    def __len__(self) -> int:
        return bin(self._bits).count('1')

    def __bool__(self) -> bool:
        return self._bits != 0

    def __contains__(self, index: object) -> bool:
        return isinstance(index, int) and 0 <= index < self.SIZE and self.is_set(index)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PartitionMap):
            return self._bits == other._bits
        if isinstance(other, int):
            return self._bits == other
        return NotImplemented

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self._bits:#x})'


def join_path(base: str, *components: str) -> str:
    """Join ``components`` onto the absolute path ``base``.

    Each component must be a single, non-empty path element; ``.`` and ``..`` are
    rejected so that the result can never escape ``base``. ``OSError`` with
    ``ENAMETOOLONG`` is raised if the result exceeds ``PATH_MAX``.
    """
    if not base.startswith('/'):
        raise ValueError(f'Base path must be absolute, got {base!r}')
    path = base.rstrip('/') or '/'
    for component in components:
        if not component or '/' in component or '\0' in component:
            raise ValueError(f'Illegal path component {component!r}')
        if component in ('.', '..'):
            raise ValueError(f'Relative path component {component!r} not allowed')
        path = f'{path}/{component}' if path != '/' else f'/{component}'
    if len(path.encode()) >= PATH_MAX:
        raise OSError(ENAMETOOLONG, 'Path exceeds PATH_MAX', path)
    return path
