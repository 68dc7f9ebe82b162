"""Block device and mount management for the raw image."""

from rpi_imagegen.device.layout import DiskLayout, Partition, parse_size
from rpi_imagegen.device.loop import BlockDeviceManager, DeviceSetupError, LoopDevice
from rpi_imagegen.device.mount import MountError, MountHandle, MountManager

__all__ = [
    "BlockDeviceManager",
    "DeviceSetupError",
    "DiskLayout",
    "LoopDevice",
    "MountError",
    "MountHandle",
    "MountManager",
    "Partition",
    "parse_size",
]
