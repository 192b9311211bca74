"""Tests for the ``manager`` module."""

import logging

import pytest

from volmgr.base import ConfigurationError, VolumeNotFoundError
from volmgr.hotplug import Action
from volmgr.manager import VolumeManager
from volmgr.state import VolumeState, VolumeType
from volmgr.volume import Volume

MMC = "/devices/mmc0/block/mmcblk0"
USB = "/devices/usb1/block/sda"


@pytest.fixture
def volumes(manager):
    sdcard = manager.create_volume(
        "sdcard", "/mnt/sdcard", VolumeType.SDCARD, paths=[MMC]
    )
    usb = manager.create_volume("usb", "/mnt/usb", VolumeType.UMS, paths=[USB])
    return sdcard, usb


def test_create_volume(manager, volumes):
    sdcard, usb = volumes
    assert len(manager) == 2
    assert "sdcard" in manager
    assert list(manager) == [sdcard, usb]
    assert manager.lookup("usb") is usb


def test_duplicate_label(manager, volumes):
    with pytest.raises(ConfigurationError):
        manager.create_volume("sdcard", "/mnt/other")


def test_lookup_unknown(manager):
    with pytest.raises(VolumeNotFoundError):
        manager.lookup("sdcard")


def test_registers_as_hotplug_sink(ctx, manager):
    assert ctx.hotplug is manager


def test_keeps_existing_hotplug_sink(ctx, sink):
    ctx.hotplug = sink
    VolumeManager(ctx)
    assert ctx.hotplug is sink


def test_event_routing(manager, volumes, events):
    """Test that events are handed to the volume claiming their device path."""
    disk_event, _ = events
    sdcard, usb = volumes
    manager.handle_block_event(disk_event(Action.ADD, USB, nparts=0))
    assert usb.state is VolumeState.IDLE
    assert sdcard.state is VolumeState.INIT


def test_unclaimed_event(manager, volumes, events, caplog):
    disk_event, _ = events
    with caplog.at_level(logging.DEBUG, logger="volmgr.manager"):
        manager.handle_block_event(disk_event(Action.ADD, "/devices/pci0/block/nvme0"))
    assert "No volume claims" in caplog.text
    assert all(volume.state is VolumeState.INIT for volume in volumes)


def test_operations_by_label(manager, volumes, events, system):
    disk_event, partition_event = events
    manager.handle_block_event(disk_event(Action.ADD, MMC))
    manager.handle_block_event(partition_event(Action.ADD, 1, devpath=MMC))
    manager.mount_volume("sdcard")
    assert "/mnt/sdcard" in system.mounts
    manager.unmount_volume("sdcard", force=True)
    assert not system.mounts
    manager.format_volume("sdcard")
    assert manager.lookup("sdcard").state is VolumeState.IDLE


def test_share_by_label(manager, volumes, events, tempfile):
    disk_event, _ = events
    manager.handle_block_event(disk_event(Action.ADD, MMC, nparts=0))
    manager.share_volume("sdcard", tempfile)
    assert manager.lookup("sdcard").state is VolumeState.SHARED
    manager.unshare_volume("sdcard", tempfile)
    assert manager.lookup("sdcard").state is VolumeState.IDLE


def test_set_asec_volume(manager, volumes, ctx):
    sdcard, usb = volumes
    manager.set_asec_volume("sdcard")
    assert sdcard.has_asec
    with pytest.raises(ConfigurationError):
        manager.set_asec_volume("usb")
    assert not usb.has_asec
    assert sdcard.has_asec


def test_delete_volume(manager, volumes, events, system):
    disk_event, partition_event = events
    sdcard, _ = volumes
    manager.handle_block_event(disk_event(Action.ADD, MMC))
    manager.handle_block_event(partition_event(Action.ADD, 1, devpath=MMC))
    sdcard.mount()
    manager.delete_volume("sdcard")
    assert "sdcard" not in manager
    assert sdcard.state is VolumeState.DELETING
    assert not system.mounts


def test_shutdown(manager, volumes):
    manager.shutdown()
    assert len(manager) == 0
    assert all(volume.state is VolumeState.DELETING for volume in volumes)


def test_set_debug(manager, volumes, ctx):
    manager.set_debug(True)
    assert all(volume.debug for volume in volumes)
    later = Volume(ctx, "later", "/mnt/later")
    manager.add_volume(later)
    assert later.debug
