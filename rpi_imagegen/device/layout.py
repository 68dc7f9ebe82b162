"""Fixed two-partition disk layout.

Partition 1 is a bootable FAT32 partition of the configured boot size,
partition 2 is ext4 and consumes the remainder of the image.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from rpi_imagegen.types import FilesystemType

MIB = 1024 * 1024

BOOT_LABEL = "RPI64-BOOT"
ROOT_LABEL = "RPI64-ROOT"

# MBR partition type ids
BOOT_PARTITION_TYPE = "0c"  # W95 FAT32 (LBA)
ROOT_PARTITION_TYPE = "83"  # Linux

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": MIB, "G": 1024 * MIB, "T": 1024 * 1024 * MIB}


def parse_size(value: str | int) -> int:
    """Parse a size such as '4G', '512M' or '1024' into bytes.

    Suffixes are binary (K=1024), matching fallocate and sfdisk. An optional
    trailing 'B' or 'iB' is accepted.

    Args:
        value: Size string or a byte count.

    Returns:
        Size in bytes.

    Raises:
        ValueError: If the value is not a positive size.
    """
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"size must be positive, got {value}")
        return value

    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"invalid size '{value}' (expected e.g. '4G' or '512M')")

    number, unit = match.groups()
    size = int(number) * _SIZE_UNITS[unit.upper()]
    if size <= 0:
        raise ValueError(f"size must be positive, got '{value}'")
    return size


def format_size(size_bytes: int) -> str:
    """Render a byte count with the largest exact binary suffix."""
    for unit in ("T", "G", "M", "K"):
        factor = _SIZE_UNITS[unit]
        if size_bytes % factor == 0:
            return f"{size_bytes // factor}{unit}"
    return str(size_bytes)


@dataclass(frozen=True)
class Partition:
    """One partition of the image.

    Attributes:
        index: 1-based partition number.
        fs_type: Filesystem applied by the formatter.
        label: Filesystem volume label.
        size_bytes: Partition size, or None for "rest of the disk".
        device_path: Device node once the loop device is partitioned.
    """

    index: int
    fs_type: FilesystemType
    label: str
    size_bytes: int | None = None
    device_path: Path | None = None

    def with_device(self, device_path: Path) -> "Partition":
        return Partition(
            index=self.index,
            fs_type=self.fs_type,
            label=self.label,
            size_bytes=self.size_bytes,
            device_path=device_path,
        )


@dataclass(frozen=True)
class DiskLayout:
    """Boot + root layout derived from the build configuration."""

    boot_size_bytes: int

    @property
    def partitions(self) -> tuple[Partition, Partition]:
        return (
            Partition(1, FilesystemType.VFAT, BOOT_LABEL, self.boot_size_bytes),
            Partition(2, FilesystemType.EXT4, ROOT_LABEL, None),
        )

    def sfdisk_script(self) -> str:
        """Return the sfdisk input for this layout.

        The boot entry is marked bootable; the root entry takes the rest.
        """
        boot_mib = self.boot_size_bytes // MIB
        return (
            f",{boot_mib}M,{BOOT_PARTITION_TYPE},*\n"
            f",,{ROOT_PARTITION_TYPE},\n"
        )


def partition_node(loop_device: Path, index: int) -> Path:
    """Return the kernel node name of a loop partition (/dev/loop0 -> /dev/loop0p1)."""
    return loop_device.with_name(f"{loop_device.name}p{index}")


__all__ = [
    "BOOT_LABEL",
    "BOOT_PARTITION_TYPE",
    "DiskLayout",
    "MIB",
    "Partition",
    "ROOT_LABEL",
    "ROOT_PARTITION_TYPE",
    "format_size",
    "parse_size",
    "partition_node",
]
