"""Host checks run before any resource is acquired."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Sequence
from pathlib import Path

from rpi_imagegen.chroot.binfmt import QEMU_STATIC
from rpi_imagegen.config import BuildConfig
from rpi_imagegen.host import CommandError, CommandRunner, run_command
from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = (
    "losetup",
    "sfdisk",
    "lsblk",
    "mkfs.vfat",
    "mkfs.ext4",
    "mount",
    "umount",
    "bsdtar",
    "arch-chroot",
    "zstd",
)


class PreflightError(ImagegenError):
    """Raised when the host cannot run a build."""

    def __init__(self, message: str, code: str = "preflight_error") -> None:
        super().__init__(message, code=code)


class DependencyMissingError(PreflightError):
    """Raised when required host tools are missing.

    Attributes:
        missing: Names of the missing tools or files.
    """

    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(
            f"Missing required dependencies: {', '.join(missing)}",
            code="dependency_missing",
        )
        self.missing = list(missing)


def check_root(geteuid: Callable[[], int] = os.geteuid) -> None:
    if geteuid() != 0:
        raise PreflightError("This command must run as root", code="not_root")


def check_tools(
    tools: Sequence[str] = REQUIRED_TOOLS,
    which: Callable[[str], str | None] = shutil.which,
) -> None:
    missing = [tool for tool in tools if which(tool) is None]
    if missing:
        raise DependencyMissingError(missing)


def check_emulator(qemu_binary: Path = QEMU_STATIC) -> None:
    """The static qemu binary is copied into the target, so it must exist."""
    if not qemu_binary.is_file():
        raise DependencyMissingError([str(qemu_binary)])


def install_build_deps(
    packages: Sequence[str],
    runner: CommandRunner = run_command,
    which: Callable[[str], str | None] = shutil.which,
) -> None:
    """Install the host build dependencies with pacman.

    Raises:
        DependencyMissingError: If the host has no pacman.
        PreflightError: If the installation fails.
    """
    if which("pacman") is None:
        raise DependencyMissingError(["pacman"])

    logger.info("Installing build dependencies: %s", " ".join(packages))
    try:
        runner(["pacman", "-Sy", "--needed", "--noconfirm", *packages])
    except CommandError as e:
        raise PreflightError(
            f"Failed to install build dependencies: {e.message}", code="install_failed"
        ) from e


def run_preflight(
    config: BuildConfig,
    runner: CommandRunner = run_command,
    *,
    which: Callable[[str], str | None] = shutil.which,
    geteuid: Callable[[], int] = os.geteuid,
    qemu_binary: Path = QEMU_STATIC,
) -> None:
    """Check privileges and host tooling.

    Args:
        config: Resolved build configuration.
        runner: Host command runner (for the optional dependency install).
        which: Tool lookup.
        geteuid: Effective uid lookup.
        qemu_binary: Static emulator that will be copied into the target.

    Raises:
        PreflightError: If not running as root.
        DependencyMissingError: If a tool or the emulator is missing.
    """
    check_root(geteuid)
    if config.install_build_deps:
        install_build_deps(config.build_deps, runner, which)
    check_tools(which=which)
    check_emulator(qemu_binary)
    logger.info("Preflight checks passed")


__all__ = [
    "DependencyMissingError",
    "PreflightError",
    "REQUIRED_TOOLS",
    "check_emulator",
    "check_root",
    "check_tools",
    "install_build_deps",
    "run_preflight",
]
