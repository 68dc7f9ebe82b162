"""qemu-user emulation shim for running aarch64 binaries on the host."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from rpi_imagegen.host import CommandError, CommandRunner, run_command
from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)

BINFMT_MISC = Path("/proc/sys/fs/binfmt_misc")

QEMU_NAME = "qemu-aarch64"
QEMU_STATIC = Path("/usr/bin/qemu-aarch64-static")

# ELF64 little-endian, e_machine = EM_AARCH64; escapes are decoded by the kernel
AARCH64_MAGIC = r"\x7fELF\x02\x01\x01\x00\x00\x00\x00\x00\x00\x00\x00\x00\x02\x00\xb7\x00"
AARCH64_MASK = r"\xff\xff\xff\xff\xff\xff\xff\x00\xff\xff\xff\xff\xff\xff\xff\xff\xfe\xff\xff\xff"


class EmulationError(ImagegenError):
    """Raised when the binfmt handler cannot be registered or installed."""

    def __init__(self, message: str, code: str = "emulation_error") -> None:
        super().__init__(message, code=code)


def registration_string(
    name: str = QEMU_NAME, interpreter: Path = QEMU_STATIC, flags: str = ""
) -> str:
    """Build the binfmt_misc register line.

    Format: ``:name:type:offset:magic:mask:interpreter:flags``
    """
    return ":".join(["", name, "M", "", AARCH64_MAGIC, AARCH64_MASK, str(interpreter), flags])


class EmulationShim:
    """Registers the qemu-aarch64 handler and copies it into the target."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        binfmt_dir: Path = BINFMT_MISC,
        qemu_binary: Path = QEMU_STATIC,
    ) -> None:
        self.runner = runner
        self.binfmt_dir = binfmt_dir
        self.qemu_binary = qemu_binary

    def is_registered(self) -> bool:
        return (self.binfmt_dir / QEMU_NAME).exists()

    def register(self) -> bool:
        """Make sure the handler is registered.

        systemd-binfmt is tried first; if that leaves the handler missing,
        binfmt_misc is mounted and the handler written directly.

        Returns:
            True if a registration was performed, False if it was present.

        Raises:
            EmulationError: If the handler is still missing afterwards.
        """
        if self.is_registered():
            logger.debug("%s handler already registered", QEMU_NAME)
            return False

        self.runner(["systemctl", "start", "systemd-binfmt"], check=False)
        if self.is_registered():
            logger.info("Registered %s via systemd-binfmt", QEMU_NAME)
            return True

        register_file = self.binfmt_dir / "register"
        if not register_file.exists():
            try:
                self.runner(
                    ["mount", "-t", "binfmt_misc", "binfmt_misc", str(self.binfmt_dir)]
                )
            except CommandError as e:
                raise EmulationError(f"Cannot mount binfmt_misc: {e.message}") from e

        logger.info("Registering %s binfmt handler", QEMU_NAME)
        try:
            register_file.write_text(registration_string(interpreter=self.qemu_binary))
        except OSError as e:
            raise EmulationError(f"Cannot register {QEMU_NAME}: {e}") from e

        if not self.is_registered():
            raise EmulationError(f"{QEMU_NAME} handler missing after registration")
        return True

    def install(self, root: Path) -> Path:
        """Copy the static emulator into the target's /usr/bin."""
        dest = root / "usr/bin" / self.qemu_binary.name
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.qemu_binary, dest)
        except OSError as e:
            raise EmulationError(
                f"Cannot copy {self.qemu_binary} into {root}: {e}", code="shim_missing"
            ) from e
        logger.info("Installed %s", dest)
        return dest


__all__ = [
    "BINFMT_MISC",
    "EmulationError",
    "EmulationShim",
    "QEMU_STATIC",
    "registration_string",
]
