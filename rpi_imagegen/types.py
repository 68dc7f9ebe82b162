"""Shared type definitions for rpi_imagegen.

This module contains the base exception, enums, and dataclasses shared
across subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ImagegenError(Exception):
    """Base class for every fatal error raised by the build.

    Attributes:
        message: Human-readable description.
        code: Stable error code for structured error handling.
    """

    def __init__(self, message: str, code: str = "imagegen_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class CleanupWarning(UserWarning):
    """A teardown step that failed.

    Never raised: collected by the cleanup controller and logged, so it
    does not change the exit status of the build.
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message


class FilesystemType(str, Enum):
    """Filesystem applied to a partition of the image."""

    VFAT = "vfat"
    EXT4 = "ext4"


class BuildStatus(str, Enum):
    """Status of a build run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class CommandResult:
    """Result of a host or chroot command."""

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class BuildResult:
    """Outcome of a build.

    Attributes:
        success: Whether every stage and the finalizer completed.
        status: Final build status.
        artifact_path: Compressed image, when produced.
        root_password: Generated root credential.
        root_password_path: File holding the root credential (mode 0600).
        manifest_path: JSON manifest describing the artifact.
        stages_run: Names of the stages that ran, in order.
        stages_skipped: Skipped stage names mapped to the skip reason.
    """

    success: bool
    status: BuildStatus
    artifact_path: Path | None = None
    root_password: str | None = field(default=None, repr=False)
    root_password_path: Path | None = None
    manifest_path: Path | None = None
    stages_run: list[str] = field(default_factory=list)
    stages_skipped: dict[str, str] = field(default_factory=dict)


__all__ = [
    "BuildResult",
    "BuildStatus",
    "CleanupWarning",
    "CommandResult",
    "FilesystemType",
    "ImagegenError",
]
