"""Fixtures used across the test suite."""

from __future__ import annotations

import os
import re
from errno import EBUSY, EINVAL, ENOENT, ENOTDIR
from pathlib import Path
from shutil import rmtree
from tempfile import mkdtemp, mkstemp

import pytest

from volmgr.base import DeviceNumber
from volmgr.context import Config, VolumeContext
from volmgr.filesystem import CheckResult
from volmgr.hotplug import Action, BlockEvent
from volmgr.manager import VolumeManager
from volmgr.system import MountFlags

PRIMARY = "/mnt/sdcard"
DISK_MAJOR = 179


@pytest.fixture
def tempdir():
    """Fixture providing a new temporary directory for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary directory.
    """
    path = Path(mkdtemp())
    yield path
    rmtree(path)  # clean up


@pytest.fixture
def tempfile():
    """Fixture providing a new temporary file for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary file.
    """
    fd, path_str = mkstemp()
    os.close(fd)  # we are going to use a Path object instead
    path = Path(path_str)
    yield path
    path.unlink(missing_ok=True)  # clean up


def _error(errno: int, path: str) -> OSError:
    return OSError(errno, os.strerror(errno), path)


class FakeMountSystem:
    """In-memory ``MountSystem``.

    ``busy`` maps ``(operation, path)`` to the number of ``EBUSY`` failures still
    to report, ``failures`` maps ``(operation, path)`` to an errno reported on
    every call. Operations are ``'mount'``, ``'move'``, ``'unmount'``,
    ``'make_dir'`` and ``'attach'``.
    """

    def __init__(self):
        self.mounts: dict[str, tuple[str, str, MountFlags, str | None]] = {}
        self.dirs: set[str] = {"/", "/mnt", "/mnt/secure", "/mnt/secure/staging"}
        self.dirs.add("/mnt/secure/asec")
        self.files: dict[str, str] = {}
        self.symlinks: dict[str, str] = {}
        self.nodes: dict[str, DeviceNumber] = {}
        self.loops: dict[str, str] = {}
        self.labels: dict[str, str] = {}
        self.busy: dict[tuple[str, str], int] = {}
        self.failures: dict[tuple[str, str], int] = {}
        self.calls: list[tuple[str, ...]] = []

    def _check(self, operation: str, path: str) -> None:
        errno = self.failures.get((operation, path))
        if errno is not None:
            raise _error(errno, path)
        remaining = self.busy.get((operation, path), 0)
        if remaining > 0:
            self.busy[(operation, path)] = remaining - 1
            raise _error(EBUSY, path)

    def calls_of(self, operation: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == operation]

    def is_mounted(self, path: str) -> bool:
        return path in self.mounts

    def mount(self, source, target, fstype="", flags=MountFlags.NONE, data=None):
        self.calls.append(("mount", source, target))
        self._check("mount", target)
        self.mounts[target] = (source, fstype, flags, data)

    def move_mount(self, source, target):
        self.calls.append(("move", source, target))
        self._check("move", source)
        if source not in self.mounts:
            raise _error(EINVAL, source)
        prefix = source.rstrip("/") + "/"
        for path in list(self.mounts):
            if path == source or path.startswith(prefix):
                self.mounts[target + path[len(source):]] = self.mounts.pop(path)

    def unmount(self, target):
        self.calls.append(("unmount", target))
        self._check("unmount", target)
        if target not in self.mounts:
            raise _error(EINVAL, target)
        del self.mounts[target]

    def exists(self, path):
        return (
            path in self.dirs
            or path in self.files
            or path in self.symlinks
            or path in self.nodes
        )

    def is_dir(self, path):
        return path in self.dirs

    def make_dir(self, path, mode=0o755):
        self._check("make_dir", path)
        if path in self.files:
            raise _error(ENOTDIR, path)
        self.dirs.add(path)

    def remove_dir(self, path):
        if path not in self.dirs:
            raise _error(ENOENT, path)
        self.dirs.discard(path)

    def remove_file(self, path):
        if path in self.symlinks:
            del self.symlinks[path]
        elif path in self.files:
            del self.files[path]
        else:
            raise _error(ENOENT, path)

    def rename(self, source, target):
        if source in self.dirs:
            self.dirs.discard(source)
            self.dirs.add(target)
        elif source in self.files:
            self.files[target] = self.files.pop(source)
        else:
            raise _error(ENOENT, source)

    def symlink(self, target, link):
        self.symlinks[link] = target

    def make_block_node(self, path, device):
        self.nodes[path] = device

    def attach_loop(self, loop_device, image):
        self._check("attach", loop_device)
        self.loops[loop_device] = image

    def detach_loop(self, loop_device):
        self.loops.pop(loop_device, None)

    def write_text(self, path, text):
        self.files[str(path)] = text

    def filesystem_label(self, device_path):
        return self.labels.get(device_path)


class FakeDriver:
    """``FilesystemDriver`` mounting through a ``FakeMountSystem``.

    ``results`` overrides ``result`` for individual device paths.
    """

    def __init__(self, name, system, result=CheckResult.RECOGNIZED, mount_errno=None):
        self.name = name
        self.system = system
        self.result = result
        self.results: dict[str, CheckResult] = {}
        self.mount_errno = mount_errno
        self.format_errno = None
        self.checked: list[str] = []
        self.mounted: list[tuple[str, str]] = []
        self.formatted: list[tuple[str, str | None]] = []
        self.options = None

    def check(self, device_path):
        self.checked.append(device_path)
        return self.results.get(device_path, self.result)

    def mount(self, device_path, mountpoint, options):
        if self.mount_errno is not None:
            raise _error(self.mount_errno, device_path)
        self.system.mount(device_path, mountpoint, self.name)
        self.mounted.append((device_path, mountpoint))
        self.options = options

    def format(self, device_path, label=None):
        if self.format_errno is not None:
            raise _error(self.format_errno, device_path)
        self.formatted.append((device_path, label))


class FakeBroadcaster:
    _TRANSITION = re.compile(r"state changed from (-?\d+) \(.*\) to (-?\d+) \(")

    def __init__(self):
        self.messages: list[tuple[int, str]] = []

    def send_broadcast(self, code, message):
        self.messages.append((int(code), message))

    @property
    def codes(self) -> list[int]:
        return [code for code, _ in self.messages]

    def transitions(self, label: str = None) -> list[tuple[int, int]]:
        """State changes broadcast so far, optionally only those of ``label``."""
        result = []
        for code, message in self.messages:
            if code != 605:
                continue
            if label is not None and not message.startswith(f"Volume {label} "):
                continue
            match = self._TRANSITION.search(message)
            result.append((int(match.group(1)), int(match.group(2))))
        return result


class FakeTerminator:
    def __init__(self):
        self.calls: list[tuple[str, object]] = []

    def terminate_holders_of(self, path, strength):
        self.calls.append((path, strength))


class FakeCrypto:
    """``CryptoMapper`` handing out ``dm`` devices with major 252."""

    def __init__(self, errno=None):
        self.errno = errno
        self.revert_errno = None
        self.setups: list[tuple[str, int, int]] = []
        self.reverts: list[str] = []
        self.remapped: set[str] = set()

    def setup_volume(self, label, major, minor):
        self.setups.append((label, major, minor))
        if self.errno is not None:
            raise _error(self.errno, label)
        self.remapped.add(label)
        return "/devices/virtual/block/dm-0", 252, 0

    def revert_volume(self, label):
        self.reverts.append(label)
        if self.revert_errno is not None:
            raise _error(self.revert_errno, label)
        self.remapped.discard(label)

    def is_remapped(self, label):
        return label in self.remapped


class FakeWriter:
    def __init__(self):
        self.descriptors = []
        self.errno = None

    def apply(self, descriptor):
        if self.errno is not None:
            raise _error(self.errno, descriptor.device)
        self.descriptors.append(descriptor)


class FakeSink:
    def __init__(self):
        self.events: list[BlockEvent] = []

    def handle_block_event(self, event):
        self.events.append(event)


@pytest.fixture
def system():
    return FakeMountSystem()


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def terminator():
    return FakeTerminator()


@pytest.fixture
def crypto_mapper():
    return FakeCrypto()


@pytest.fixture
def writer():
    return FakeWriter()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def exfat(system):
    return FakeDriver("exfat", system, CheckResult.NOT_RECOGNIZED)


@pytest.fixture
def vfat(system):
    return FakeDriver("vfat", system, CheckResult.RECOGNIZED)


@pytest.fixture
def make_driver(system):
    """Fixture providing a factory of additional ``FakeDriver`` objects."""

    def factory(name, result=CheckResult.RECOGNIZED, mount_errno=None):
        return FakeDriver(name, system, result, mount_errno)

    return factory


@pytest.fixture
def config():
    return Config(primary_storage=PRIMARY)


@pytest.fixture
def ctx(system, broadcaster, terminator, exfat, vfat, writer, config):
    """Fixture providing a ``VolumeContext`` built from in-memory fakes.

    The detection cascade tries exFAT before FAT. Sleeping is a no-op.
    """
    return VolumeContext(
        system,
        broadcaster,
        drivers=[exfat, vfat],
        terminator=terminator,
        partition_writer=writer,
        config=config,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def manager(ctx):
    return VolumeManager(ctx)


def disk_event(action, devpath="/devices/mmc0/block/mmcblk0", minor=0, nparts=1):
    return BlockEvent(
        action=action,
        devpath=devpath,
        major=DISK_MAJOR,
        minor=minor,
        devname="mmcblk0",
        devtype="disk",
        nparts=nparts,
    )


def partition_event(action, partn, label="", devpath="/devices/mmc0/block/mmcblk0"):
    return BlockEvent(
        action=action,
        devpath=f"{devpath}/mmcblk0p{partn}",
        major=DISK_MAJOR,
        minor=partn,
        devname=f"mmcblk0p{partn}",
        devtype="partition",
        partn=partn,
        partname=label,
    )


@pytest.fixture
def insert_media():
    """Fixture providing a function that announces a disk with partitions to a
    volume.

    Called as ``insert_media(volume, labels)`` where ``labels`` holds one label
    per partition; an empty sequence announces an unpartitioned disk.
    """

    def insert(volume, labels=("",)):
        volume.handle_block_event(disk_event(Action.ADD, nparts=len(labels)))
        for partn, label in enumerate(labels, start=1):
            volume.handle_block_event(partition_event(Action.ADD, partn, label))

    return insert


@pytest.fixture
def events():
    """Fixture providing the event factories ``(disk_event, partition_event)``."""
    return disk_event, partition_event
