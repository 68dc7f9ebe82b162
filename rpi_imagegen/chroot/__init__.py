"""Cross-architecture chroot execution in the target root."""

from rpi_imagegen.chroot.binfmt import EmulationError, EmulationShim, registration_string
from rpi_imagegen.chroot.executor import ChrootExecutionError, ChrootExecutor
from rpi_imagegen.chroot.pacman import PackageManager

__all__ = [
    "ChrootExecutionError",
    "ChrootExecutor",
    "EmulationError",
    "EmulationShim",
    "PackageManager",
    "registration_string",
]
