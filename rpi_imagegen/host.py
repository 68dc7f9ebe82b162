"""Host command execution.

This module handles:
- Running host tools (losetup, sfdisk, mkfs, mount, bsdtar, zstd, ...)
- Logging every command before it runs
- Capturing stdout/stderr for diagnostics
- Mapping failures to CommandError

Every component that shells out takes a ``runner`` with the signature of
:func:`run_command`, so tests can substitute a recording fake.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from typing import Protocol

from rpi_imagegen.types import CommandResult, ImagegenError

logger = logging.getLogger(__name__)


class CommandError(ImagegenError):
    """Raised when a host command exits non-zero or cannot be started."""

    def __init__(
        self,
        message: str,
        argv: Sequence[str],
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "command_error",
    ) -> None:
        super().__init__(message, code=code)
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr


class CommandRunner(Protocol):
    """Callable contract shared by run_command and its test doubles."""

    def __call__(
        self,
        argv: Sequence[str],
        *,
        input_text: str | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult: ...


def format_argv(argv: Sequence[str]) -> str:
    """Render argv as a copy-pasteable shell command."""
    return shlex.join(argv)


def run_command(
    argv: Sequence[str],
    *,
    input_text: str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> CommandResult:
    """Run a host command with consistent logging.

    Args:
        argv: Command and arguments (never passed through a shell).
        input_text: Optional text fed to stdin.
        check: Raise CommandError on non-zero exit.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        CommandResult with captured output.

    Raises:
        CommandError: If the command cannot start, times out, or fails
            while ``check`` is set.
    """
    argv_list = [str(a) for a in argv]
    cmd_str = format_argv(argv_list)
    logger.debug("Executing: %s", cmd_str)

    try:
        proc = subprocess.run(
            argv_list,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"Command timed out after {timeout} seconds: {cmd_str}",
            argv_list,
            code="timeout",
        ) from e
    except OSError as e:
        raise CommandError(
            f"Failed to execute {cmd_str}: {e}",
            argv_list,
            code="execution_error",
        ) from e

    if proc.stdout:
        logger.debug("stdout: %s", proc.stdout.strip())
    if proc.stderr:
        logger.debug("stderr: %s", proc.stderr.strip())

    result = CommandResult(
        argv=argv_list,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )

    if check and proc.returncode != 0:
        raise CommandError(
            f"Command failed with exit code {proc.returncode}: {cmd_str}"
            + (f"\n{proc.stderr.strip()}" if proc.stderr else ""),
            argv_list,
            exit_code=proc.returncode,
            stderr=proc.stderr or "",
        )

    return result


def sync_filesystems() -> None:
    """Flush filesystem buffers to the backing devices."""
    logger.debug("Syncing filesystems")
    os.sync()


__all__ = [
    "CommandError",
    "CommandRunner",
    "format_argv",
    "run_command",
    "sync_filesystems",
]
