"""Tests for the ``context`` module."""

import sys

import pytest

from volmgr.context import Config, RetryPolicy, VolumeContext


def test_config_defaults():
    config = Config()
    assert config.primary_storage is None
    assert config.move_policy == RetryPolicy(5, 0.25, 3, 4)
    assert config.unmount_policy == RetryPolicy(20, 1.0, 4, 5)
    assert config.secure_image_dir == "/mnt/secure/staging/.android_secure"
    assert config.legacy_image_dir == "/mnt/secure/staging/android_secure"
    assert config.autorun_file == "/mnt/secure/staging/autorun.inf"


def test_config_from_environ():
    config = Config.from_environ(
        {
            "EXTERNAL_STORAGE": "/mnt/sdcard",
            "VOLMGR_CRYPTO_STATE": "encrypted",
            "VOLMGR_FAKE_SDCARD": "1",
            "VOLMGR_VIRTUAL_SDCARD": "no",
            "VOLMGR_DEVICE_DIR": "/dev/vold",
        }
    )
    assert config.primary_storage == "/mnt/sdcard"
    assert config.crypto_state == "encrypted"
    assert config.fake_sdcard
    assert not config.virtual_sdcard
    assert config.device_dir == "/dev/vold"


def test_config_from_empty_environ():
    assert Config.from_environ({}) == Config()


def test_config_from_environ_overrides():
    """Test that keyword arguments take precedence over the environment."""
    config = Config.from_environ(
        {"EXTERNAL_STORAGE": "/mnt/sdcard"}, primary_storage="/storage/emulated"
    )
    assert config.primary_storage == "/storage/emulated"


@pytest.mark.parametrize("value", ["1", "true", "YES", " on "])
def test_config_flag_values(value):
    assert Config.from_environ({"VOLMGR_FAKE_SDCARD": value}).fake_sdcard


@pytest.mark.parametrize(
    ["primary", "mountpoint", "expected"],
    [
        ("/mnt/sdcard", "/mnt/sdcard", True),
        ("/mnt/sdcard", "/storage/sdcard1", False),
        (None, "/mnt/sdcard", False),
    ],
)
def test_is_primary(system, broadcaster, primary, mountpoint, expected):
    ctx = VolumeContext(system, broadcaster, config=Config(primary_storage=primary))
    assert ctx.is_primary(mountpoint) is expected


def test_device_path(ctx):
    assert ctx.device_path(179, 1) == "/dev/block/vold/179:1"


def test_independent_contexts(system, broadcaster, terminator):
    """Test that the shared state of one context does not leak into another."""
    first = VolumeContext(system, broadcaster, terminator=terminator)
    second = VolumeContext(system, broadcaster, terminator=terminator)
    first.legacy.sdcard_mounted = True
    first.loop.image = "/data/disk.img"
    assert not second.legacy.sdcard_mounted
    assert not second.loop.mounted


@pytest.mark.skipif(sys.platform != "linux", reason="Linux-only")
def test_for_linux(system, broadcaster, monkeypatch):
    """Test that the Linux context is configured from the environment."""
    monkeypatch.setattr("volmgr.linux.LinuxMountSystem", lambda: system)
    monkeypatch.setenv("EXTERNAL_STORAGE", "/mnt/sdcard")
    monkeypatch.delenv("VOLMGR_DEVICE_DIR", raising=False)
    ctx = VolumeContext.for_linux(broadcaster, sleep=lambda seconds: None)
    assert ctx.system is system
    assert ctx.broadcaster is broadcaster
    assert ctx.is_primary("/mnt/sdcard")
    assert ctx.device_path(179, 1) == "/dev/block/vold/179:1"


@pytest.mark.skipif(sys.platform != "linux", reason="Linux-only")
def test_for_linux_explicit_config(system, broadcaster, monkeypatch):
    monkeypatch.setattr("volmgr.linux.LinuxMountSystem", lambda: system)
    monkeypatch.setenv("EXTERNAL_STORAGE", "/mnt/sdcard")
    config = Config(primary_storage="/storage/emulated")
    ctx = VolumeContext.for_linux(broadcaster, config)
    assert ctx.config is config
    assert not ctx.is_primary("/mnt/sdcard")
