"""Loop-backed image file management.

This module handles:
- Reserving the raw image file
- Attaching it to a loop device with partition scanning
- Writing the partition table and waiting for partition nodes
- Formatting partitions
- Detaching the loop device (idempotent)
"""

from __future__ import annotations

import logging
import os
import stat
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from rpi_imagegen.device.layout import DiskLayout, Partition, partition_node
from rpi_imagegen.host import CommandError, CommandRunner, run_command
from rpi_imagegen.types import FilesystemType, ImagegenError

logger = logging.getLogger(__name__)

LOOP_MAJOR = 7
LOOP_NODE_COUNT = 32

# Bounded polling for losetup and partition nodes
DEFAULT_ATTEMPTS = 10
DEFAULT_INTERVAL = 1.0


class DeviceSetupError(ImagegenError):
    """Raised when the image file or loop device cannot be prepared."""

    def __init__(self, message: str, code: str = "device_setup_error") -> None:
        super().__init__(message, code=code)


@dataclass
class LoopDevice:
    """Handle of an attached loop device.

    Attributes:
        device_path: Loop device node (e.g. /dev/loop0).
        backing_file: Image file behind it.
        attached: False once detached.
    """

    device_path: Path
    backing_file: Path
    attached: bool = True


class BlockDeviceManager:
    """Owns the raw image file and its loop device."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        attempts: int = DEFAULT_ATTEMPTS,
        interval: float = DEFAULT_INTERVAL,
        dev_dir: Path = Path("/dev"),
    ) -> None:
        self.runner = runner
        self.sleep = sleep
        self.attempts = attempts
        self.interval = interval
        self.dev_dir = dev_dir

    def allocate(self, path: Path, size_bytes: int) -> Path:
        """Reserve a file of exactly ``size_bytes``.

        Raises:
            DeviceSetupError: If the space cannot be reserved.
        """
        logger.info("Allocating %s (%d bytes)", path, size_bytes)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
            try:
                os.posix_fallocate(fd, 0, size_bytes)
            finally:
                os.close(fd)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise DeviceSetupError(
                f"Cannot reserve {size_bytes} bytes for {path}: {e}",
                code="allocate_failed",
            ) from e
        return path

    def ensure_loop_nodes(self, count: int = LOOP_NODE_COUNT) -> None:
        """Create missing /dev/loopN nodes.

        Containers often ship a /dev without loop nodes; losetup --find
        cannot use a device that has no node.
        """
        for minor in range(count):
            node = self.dev_dir / f"loop{minor}"
            if node.exists():
                continue
            try:
                os.mknod(node, 0o660 | stat.S_IFBLK, os.makedev(LOOP_MAJOR, minor))
                logger.debug("Created %s", node)
            except OSError as e:
                logger.warning("Cannot create %s: %s", node, e)

    def attach(self, image_path: Path) -> LoopDevice:
        """Attach the image to the first free loop device with partition scan.

        Raises:
            DeviceSetupError: If no loop device could be attached.
        """
        self.ensure_loop_nodes()
        argv = ["losetup", "--find", "--partscan", "--show", str(image_path)]

        last_error = ""
        for attempt in range(1, self.attempts + 1):
            result = self.runner(argv, check=False)
            device = result.stdout.strip()
            if result.ok and device:
                logger.info("Attached %s to %s", image_path.name, device)
                return LoopDevice(device_path=Path(device), backing_file=image_path)
            last_error = result.stderr.strip()
            logger.debug("losetup attempt %d/%d failed: %s", attempt, self.attempts, last_error)
            if attempt < self.attempts:
                self.sleep(self.interval)

        raise DeviceSetupError(
            f"Cannot attach {image_path} to a loop device: {last_error}",
            code="attach_failed",
        )

    def partition(self, loop: LoopDevice, layout: DiskLayout) -> None:
        """Write the partition table, wiping any existing signatures."""
        logger.info("Partitioning %s", loop.device_path)
        try:
            self.runner(
                ["sfdisk", "--quiet", "--wipe", "always", str(loop.device_path)],
                input_text=layout.sfdisk_script(),
            )
        except CommandError as e:
            raise DeviceSetupError(
                f"Cannot partition {loop.device_path}: {e.message}",
                code="partition_failed",
            ) from e

    def _create_nodes_from_lsblk(self, loop: LoopDevice) -> None:
        result = self.runner(
            ["lsblk", "--raw", "--output", "NAME,MAJ:MIN", "--noheadings", str(loop.device_path)],
            check=False,
        )
        if not result.ok:
            return

        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) != 2 or not parts[0].startswith(f"{loop.device_path.name}p"):
                continue
            name, majmin = parts
            node = loop.device_path.parent / name
            if node.exists():
                continue
            try:
                major, minor = (int(n) for n in majmin.split(":"))
                os.mknod(node, 0o660 | stat.S_IFBLK, os.makedev(major, minor))
                logger.debug("Created partition node %s (%s)", node, majmin)
            except (OSError, ValueError) as e:
                logger.warning("Cannot create %s: %s", node, e)

    def wait_for_partition_nodes(
        self, loop: LoopDevice, layout: DiskLayout
    ) -> list[Partition]:
        """Wait until every partition of the layout has a device node.

        Missing nodes are created from the kernel's MAJ:MIN numbers.

        Returns:
            The layout's partitions bound to their device nodes.

        Raises:
            DeviceSetupError: If the nodes do not appear in time.
        """
        expected = {p.index: partition_node(loop.device_path, p.index) for p in layout.partitions}

        for attempt in range(1, self.attempts + 1):
            self._create_nodes_from_lsblk(loop)
            if all(node.exists() for node in expected.values()):
                return [p.with_device(expected[p.index]) for p in layout.partitions]
            logger.debug(
                "Waiting for partition nodes of %s (%d/%d)",
                loop.device_path,
                attempt,
                self.attempts,
            )
            if attempt < self.attempts:
                self.sleep(self.interval)

        missing = ", ".join(str(n) for n in expected.values() if not n.exists())
        raise DeviceSetupError(
            f"Partition nodes did not appear: {missing}", code="partition_nodes_missing"
        )

    def format(self, partition: Partition) -> None:
        """Create the partition's filesystem."""
        if partition.device_path is None:
            raise DeviceSetupError(
                f"Partition {partition.index} has no device node", code="format_failed"
            )

        device = str(partition.device_path)
        if partition.fs_type == FilesystemType.VFAT:
            argv = ["mkfs.vfat", "-F32", "-n", partition.label, device]
        else:
            argv = [
                "mkfs.ext4",
                "-q",
                "-E",
                "lazy_itable_init=0,lazy_journal_init=0",
                "-F",
                "-L",
                partition.label,
                device,
            ]

        logger.info("Formatting %s as %s (%s)", device, partition.fs_type.value, partition.label)
        try:
            self.runner(argv)
        except CommandError as e:
            raise DeviceSetupError(
                f"Cannot format {device}: {e.message}", code="format_failed"
            ) from e

    def detach(self, loop: LoopDevice) -> None:
        """Detach the loop device. Safe to call more than once.

        Raises:
            DeviceSetupError: If the device is still attached and losetup -d
                fails.
        """
        if not loop.attached:
            return

        device = str(loop.device_path)
        if not self.runner(["losetup", device], check=False).ok:
            logger.debug("%s is not attached", device)
            loop.attached = False
            return

        logger.info("Detaching %s", device)
        try:
            self.runner(["losetup", "-d", device])
        except CommandError as e:
            raise DeviceSetupError(
                f"Cannot detach {device}: {e.message}", code="detach_failed"
            ) from e
        loop.attached = False

    def find_attached(self, image_path: Path) -> list[LoopDevice]:
        """List loop devices currently backed by ``image_path``."""
        result = self.runner(
            ["losetup", "--noheadings", "--output", "NAME", "--associated", str(image_path)],
            check=False,
        )
        if not result.ok:
            return []
        return [
            LoopDevice(device_path=Path(line.strip()), backing_file=image_path)
            for line in result.stdout.splitlines()
            if line.strip()
        ]


__all__ = [
    "BlockDeviceManager",
    "DeviceSetupError",
    "LOOP_MAJOR",
    "LoopDevice",
]
