"""Volume lifecycle management.

Detects, mounts, unmounts, formats and shares storage media, including encrypted
volumes and loopback disk images.
"""

from .context import Config, VolumeContext
from .manager import VolumeManager
from .volume import Volume

__all__ = ["Config", "VolumeContext", "VolumeManager", "Volume"]
