"""Tests for the ``compat`` module."""

from dataclasses import replace

import pytest

from volmgr.broadcast import ResponseCode
from volmgr.compat import link_virtual_sdcard, unlink_virtual_sdcard
from volmgr.hotplug import Action
from volmgr.state import VolumeState, VolumeType
from volmgr.volume import Volume

FLASH_DEVPATH = "/devices/mmc0/block/mmcblk0"


@pytest.fixture
def announce(manager, events):
    """Fixture providing a function that announces a flash disk with one
    partition to ``manager``.
    """
    disk_event, partition_event = events

    def insert():
        manager.handle_block_event(disk_event(Action.ADD, FLASH_DEVPATH))
        manager.handle_block_event(partition_event(Action.ADD, 1, "", FLASH_DEVPATH))

    return insert


@pytest.fixture
def legacy(ctx, config, manager, announce):
    """Fixture providing ``(flash, sdcard)`` volumes with the fake sdcard enabled."""
    ctx.config = replace(config, fake_sdcard=True)
    flash = manager.create_volume(
        "flash", "/mnt/flash", VolumeType.FLASH, paths=[FLASH_DEVPATH]
    )
    sdcard = manager.create_volume(
        "sdcard",
        "/mnt/sdcard",
        VolumeType.SDCARD,
        paths=[ctx.config.fake_sdcard_devpath],
    )
    announce()
    return flash, sdcard


def test_fake_sdcard_published(legacy, system):
    """Test that a mounted flash partition is handed over to the sdcard volume."""
    flash, sdcard = legacy
    flash.mount()
    assert flash.state is VolumeState.MOUNTED
    assert flash.fake_sdcard_partition == 0
    assert "/mnt/flash" not in system.mounts
    assert system.symlinks["/mnt/flash"] == "/mnt/sdcard"
    assert sdcard.state is VolumeState.IDLE
    assert sdcard.device_node == "/dev/block/vold/179:1"


def test_fake_sdcard_mountable(legacy, system):
    flash, sdcard = legacy
    flash.mount()
    sdcard.mount()
    assert system.mounts["/mnt/sdcard"][0] == "/dev/block/vold/179:1"


def test_fake_sdcard_withdrawn(legacy, system, broadcaster):
    flash, sdcard = legacy
    flash.mount()
    flash.unmount()
    assert flash.state is VolumeState.IDLE
    assert flash.fake_sdcard_partition is None
    assert flash.mounted_partitions == 0
    assert "/mnt/flash" not in system.symlinks
    assert sdcard.state is VolumeState.NO_MEDIA
    assert ResponseCode.VOLUME_DISK_REMOVED in broadcaster.codes


def test_fake_sdcard_withdrawn_while_mounted(legacy, system):
    """Test that the sdcard volume is unmounted when its fake disk disappears."""
    flash, sdcard = legacy
    flash.mount()
    sdcard.mount()
    flash.unmount()
    assert sdcard.state is VolumeState.NO_MEDIA
    assert not system.mounts


def test_fake_sdcard_skipped_when_sdcard_mounted(legacy, ctx, system):
    flash, _ = legacy
    ctx.legacy.sdcard_mounted = True
    flash.mount()
    assert flash.fake_sdcard_partition is None
    assert "/mnt/flash" in system.mounts


def test_fake_sdcard_disabled(ctx, manager, announce, system):
    flash = manager.create_volume(
        "flash", "/mnt/flash", VolumeType.FLASH, paths=[FLASH_DEVPATH]
    )
    announce()
    flash.mount()
    assert flash.fake_sdcard_partition is None
    assert ctx.legacy.flash_mounted


def test_fake_sdcard_without_sink(ctx, config, insert_media):
    """Test that the emulation works without anybody listening for events."""
    ctx.config = replace(config, fake_sdcard=True)
    flash = Volume(ctx, "flash", "/mnt/flash", VolumeType.FLASH)
    insert_media(flash)
    flash.mount()
    assert flash.fake_sdcard_partition == 0


@pytest.fixture
def virtual(ctx, config):
    ctx.config = replace(config, virtual_sdcard=True)
    return ctx


def test_link_virtual_sdcard(virtual, system, broadcaster):
    assert link_virtual_sdcard(virtual, "/mnt/flash")
    assert system.symlinks["/mnt/sdcard"] == "/mnt/flash/.vsdcard"
    assert "/mnt/flash/.vsdcard" in system.dirs
    assert virtual.legacy.virtual_sdcard_mounted
    assert broadcaster.transitions("sdcard") == [(1, 4)]


def test_link_virtual_sdcard_once(virtual, broadcaster):
    link_virtual_sdcard(virtual, "/mnt/flash")
    assert not link_virtual_sdcard(virtual, "/mnt/flash2")
    assert len(broadcaster.transitions("sdcard")) == 1


@pytest.mark.parametrize("virtual_sdcard", [False, True])
def test_link_virtual_sdcard_not_applicable(ctx, config, virtual_sdcard, system):
    """Test that nothing is linked when disabled or while real media is mounted."""
    ctx.config = replace(config, virtual_sdcard=virtual_sdcard)
    ctx.legacy.sdcard_mounted = True
    assert not link_virtual_sdcard(ctx, "/mnt/flash")
    assert not system.symlinks


def test_unlink_virtual_sdcard(virtual, system, broadcaster):
    link_virtual_sdcard(virtual, "/mnt/flash")
    unlink_virtual_sdcard(virtual)
    assert "/mnt/sdcard" not in system.symlinks
    assert "/mnt/sdcard" in system.dirs
    assert not virtual.legacy.virtual_sdcard_mounted
    assert broadcaster.transitions("sdcard") == [(1, 4), (4, 1)]


def test_unlink_virtual_sdcard_not_linked(virtual, broadcaster):
    unlink_virtual_sdcard(virtual)
    assert broadcaster.messages == []


def test_flash_mount_links_virtual_sdcard(virtual, insert_media, system):
    flash = Volume(virtual, "flash", "/mnt/flash", VolumeType.FLASH)
    insert_media(flash)
    flash.mount()
    assert system.symlinks["/mnt/sdcard"] == "/mnt/flash/.vsdcard"
    assert virtual.legacy.flash_mounted
