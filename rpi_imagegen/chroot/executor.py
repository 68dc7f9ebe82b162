"""Command execution inside the mounted target root.

Commands run through ``arch-chroot``, which bind-mounts /dev, /proc, /sys
and resolv.conf for the duration of each call.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from rpi_imagegen.host import CommandError, CommandRunner, format_argv, run_command
from rpi_imagegen.types import CommandResult, ImagegenError

logger = logging.getLogger(__name__)


class ChrootExecutionError(ImagegenError):
    """Raised when a command inside the target root fails.

    Attributes:
        command: The command as it was run inside the chroot.
        exit_code: Its exit status, or None if it could not be started.
        stderr: Captured error output.
    """

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int | None,
        stderr: str = "",
        code: str = "chroot_execution_error",
    ) -> None:
        cmd_str = format_argv(list(command))
        if exit_code is None:
            message = f"Cannot run '{cmd_str}' in chroot"
        else:
            message = f"'{cmd_str}' exited with status {exit_code} in chroot"
        if stderr.strip():
            message += f": {stderr.strip().splitlines()[-1]}"
        super().__init__(message, code=code)
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr


class ChrootExecutor:
    """Runs commands with the target root as ``/``. No retries."""

    def __init__(self, root: Path, runner: CommandRunner = run_command) -> None:
        self.root = root
        self.runner = runner

    def run(self, argv: Sequence[str], *, input_text: str | None = None) -> CommandResult:
        """Run ``argv`` inside the root.

        Raises:
            ChrootExecutionError: On non-zero exit or if arch-chroot cannot
                be started.
        """
        command = [str(a) for a in argv]
        logger.info("chroot: %s", format_argv(command))
        try:
            result = self.runner(
                ["arch-chroot", str(self.root), *command],
                input_text=input_text,
                check=False,
            )
        except CommandError as e:
            raise ChrootExecutionError(command, None, e.message) from e

        if not result.ok:
            raise ChrootExecutionError(command, result.returncode, result.stderr)
        return result

    def enable_service(self, name: str) -> None:
        self.run(["systemctl", "enable", name])


__all__ = ["ChrootExecutionError", "ChrootExecutor"]
