"""Base system stages: extraction, emulation, pacman and kernel."""

from __future__ import annotations

import logging
import shutil

from rpi_imagegen.chroot.executor import ChrootExecutionError
from rpi_imagegen.host import sync_filesystems
from rpi_imagegen.stages.pipeline import StageContext

logger = logging.getLogger(__name__)

# Kernel and EEPROM tooling per board; the kernel comes first
KERNEL_PACKAGES = {
    5: ("linux-rpi-16k", "rpi5-eeprom"),
    4: ("linux-rpi", "rpi4-eeprom"),
}

# Generic aarch64 kernel and U-Boot shipped by the base archive
OLD_PACKAGES = ("linux-aarch64", "uboot-raspberrypi")


def extract_base_system(ctx: StageContext) -> None:
    """Unpack the base archive into the root, preserving permissions."""
    ctx.runner(["bsdtar", "-xpf", str(ctx.archive_path), "-C", str(ctx.root)])
    sync_filesystems()


def install_emulation_shim(ctx: StageContext) -> None:
    ctx.shim.register()
    ctx.shim.install(ctx.root)


def clean_boot_partition(ctx: StageContext) -> None:
    """Empty /boot; the U-Boot files of the base archive are not used."""
    for entry in ctx.boot.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
    logger.debug("Emptied %s", ctx.boot)


def init_pacman(ctx: StageContext) -> None:
    ctx.pacman.init_keyring()
    ctx.pacman.write_mirrorlist()
    ctx.pacman.sync(["archlinux-keyring"])


def remove_old_packages(ctx: StageContext) -> None:
    """Remove the generic kernel and U-Boot; absent packages are not an error."""
    try:
        ctx.pacman.remove(OLD_PACKAGES)
    except ChrootExecutionError as e:
        if e.exit_code is None:
            raise
        logger.warning("Could not remove %s: %s", " ".join(OLD_PACKAGES), e.message)


def install_kernel(ctx: StageContext) -> None:
    """Install the board kernel over the emptied /boot and verify it.

    Raises:
        ChrootExecutionError: If installation fails or the kernel package
            is not registered afterwards.
    """
    packages = KERNEL_PACKAGES[ctx.config.rpi_model]
    ctx.pacman.install(packages, overwrite="/boot/*")

    kernel = packages[0]
    if not ctx.pacman.is_installed(kernel):
        raise ChrootExecutionError(
            ["pacman", "-Q", kernel], 1, f"{kernel} is not installed"
        )
    logger.info("Kernel %s installed", kernel)


def install_packages(ctx: StageContext) -> None:
    ctx.pacman.install(ctx.config.packages)


def update_system(ctx: StageContext) -> None:
    ctx.pacman.upgrade()


__all__ = [
    "KERNEL_PACKAGES",
    "OLD_PACKAGES",
    "clean_boot_partition",
    "extract_base_system",
    "init_pacman",
    "install_emulation_shim",
    "install_kernel",
    "install_packages",
    "remove_old_packages",
    "update_system",
]
