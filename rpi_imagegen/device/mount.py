"""Mounting of the image partitions.

Root is mounted first and boot nests under it at ``<root>/boot``; unmounting
happens in the reverse order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from rpi_imagegen.device.layout import Partition
from rpi_imagegen.host import CommandError, CommandRunner, run_command
from rpi_imagegen.types import CleanupWarning, ImagegenError

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")


class MountError(ImagegenError):
    """Raised when a mount or a forward unmount fails."""

    def __init__(self, message: str, code: str = "mount_error") -> None:
        super().__init__(message, code=code)


@dataclass
class MountHandle:
    """A partition mounted at a target directory."""

    partition: Partition
    target: Path
    mounted: bool = False


def _unescape(field: str) -> str:
    # /proc/mounts encodes space, tab, newline and backslash as octal
    for escaped, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(escaped, char)
    return field


def read_mountpoints(source: Path = PROC_MOUNTS) -> list[Path]:
    """Return every mount point listed in a mounts table."""
    mountpoints = []
    with source.open() as handle:
        for line in handle:
            words = line.split()
            if len(words) >= 2:
                mountpoints.append(Path(_unescape(words[1])))
    return mountpoints


class MountManager:
    """Mounts root and boot, and unmounts them in reverse order."""

    def __init__(
        self, runner: CommandRunner = run_command, mounts_file: Path = PROC_MOUNTS
    ) -> None:
        self.runner = runner
        self.mounts_file = mounts_file
        self.root: MountHandle | None = None
        self.boot: MountHandle | None = None

    def is_mounted(self, path: Path) -> bool:
        """Check /proc/mounts; works for bind and nested mounts."""
        path = path.resolve()
        return any(mp == path for mp in read_mountpoints(self.mounts_file))

    def mounts_under(self, prefix: Path) -> list[Path]:
        """Mount points at or below ``prefix``, deepest first."""
        prefix = prefix.resolve()
        found = [
            mp for mp in read_mountpoints(self.mounts_file) if mp.is_relative_to(prefix)
        ]
        found.sort(reverse=True)
        return found

    def _mount(self, partition: Partition, target: Path) -> MountHandle:
        if partition.device_path is None:
            raise MountError(f"Partition {partition.index} has no device node")

        try:
            target.mkdir(parents=True, exist_ok=True)
            self.runner(["mount", str(partition.device_path), str(target)])
        except OSError as e:
            raise MountError(f"Cannot create mount point {target}: {e}") from e
        except CommandError as e:
            raise MountError(
                f"Cannot mount {partition.device_path} on {target}: {e.message}",
                code="mount_failed",
            ) from e

        logger.info("Mounted %s on %s", partition.device_path, target)
        return MountHandle(partition=partition, target=target, mounted=True)

    def mount_root(self, partition: Partition, target: Path) -> MountHandle:
        self.root = self._mount(partition, target)
        return self.root

    def mount_boot(self, partition: Partition) -> MountHandle:
        """Mount the boot partition at ``<root>/boot``.

        Raises:
            MountError: If root is not mounted or the mount fails.
        """
        if self.root is None or not self.root.mounted:
            raise MountError("Root must be mounted before boot", code="root_not_mounted")
        self.boot = self._mount(partition, self.root.target / "boot")
        return self.boot

    def _unmount(self, handle: MountHandle, recursive: bool) -> None:
        argv = ["umount", "-R", str(handle.target)] if recursive else ["umount", str(handle.target)]
        try:
            self.runner(argv)
        except CommandError as e:
            raise MountError(
                f"Cannot unmount {handle.target}: {e.message}", code="unmount_failed"
            ) from e
        handle.mounted = False
        logger.info("Unmounted %s", handle.target)

    def unmount_boot(self) -> None:
        if self.boot is not None and self.boot.mounted:
            self._unmount(self.boot, recursive=False)

    def unmount_root(self) -> None:
        if self.root is not None and self.root.mounted:
            self._unmount(self.root, recursive=True)
            if self.boot is not None:
                self.boot.mounted = False

    def unmount_path(self, target: Path) -> None:
        """Forced lazy recursive unmount of an arbitrary mount point."""
        self.runner(["umount", "-R", "-f", "-l", str(target)])

    def unmount_all(self, best_effort: bool = True) -> list[CleanupWarning]:
        """Unmount boot then root, each attempt independent.

        Args:
            best_effort: Collect failures as warnings instead of raising.

        Returns:
            Warnings for unmounts that failed.

        Raises:
            MountError: On the first failure when ``best_effort`` is False.
        """
        warnings: list[CleanupWarning] = []
        for handle in (self.boot, self.root):
            if handle is None:
                continue
            if not self.is_mounted(handle.target):
                handle.mounted = False
                continue
            try:
                self.unmount_path(handle.target)
                handle.mounted = False
                logger.info("Unmounted %s", handle.target)
            except CommandError as e:
                if not best_effort:
                    raise MountError(
                        f"Cannot unmount {handle.target}: {e.message}", code="unmount_failed"
                    ) from e
                warning = CleanupWarning(f"unmount {handle.target}", e.message)
                logger.warning("%s", warning)
                warnings.append(warning)
        return warnings


__all__ = [
    "MountError",
    "MountHandle",
    "MountManager",
    "read_mountpoints",
]
