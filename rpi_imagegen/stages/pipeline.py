"""Ordered stage execution.

A stage is a named action against the mounted target root. Stages run in
list order, the first failure stops the pipeline, and a stage whose skip
predicate returns a reason is recorded as skipped instead of run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from rpi_imagegen.chroot.binfmt import EmulationShim
from rpi_imagegen.chroot.executor import ChrootExecutor
from rpi_imagegen.chroot.pacman import PackageManager
from rpi_imagegen.config import BuildConfig
from rpi_imagegen.host import CommandRunner
from rpi_imagegen.types import ImagegenError

logger = logging.getLogger(__name__)


class StageFailedError(ImagegenError):
    """Raised when a stage fails; chained to the underlying error.

    Attributes:
        stage_name: Name of the failing stage.
        ordinal: 1-based position of the stage in the pipeline.
    """

    def __init__(self, stage_name: str, ordinal: int, cause: BaseException) -> None:
        detail = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(
            f"Stage {ordinal} ({stage_name}) failed: {detail}", code="stage_failed"
        )
        self.stage_name = stage_name
        self.ordinal = ordinal


@dataclass
class StageContext:
    """Everything a stage may touch.

    Attributes:
        config: Resolved build configuration.
        root: Mount point of the target root (boot is at root/boot).
        archive_path: Verified base archive.
        output_dir: Directory receiving the build artifacts.
        runner: Host command runner.
        chroot: Executor for commands inside the root.
        pacman: Package manager inside the root.
        shim: qemu-user emulation shim.
        http_client: Client for SSH key downloads.
        root_password_path: Set by the root password stage.
    """

    config: BuildConfig
    root: Path
    archive_path: Path
    output_dir: Path
    runner: CommandRunner
    chroot: ChrootExecutor
    pacman: PackageManager
    shim: EmulationShim
    http_client: httpx.Client
    root_password_path: Path | None = None

    @property
    def boot(self) -> Path:
        return self.root / "boot"


StageAction = Callable[[StageContext], None]
SkipPredicate = Callable[[StageContext], "str | None"]


@dataclass(frozen=True)
class Stage:
    """A named pipeline step.

    Attributes:
        name: Stable identifier used in logs and errors.
        action: Function performing the stage.
        skip_if: Returns a reason to skip, or None to run.
    """

    name: str
    action: StageAction
    skip_if: SkipPredicate | None = None


@dataclass
class PipelineResult:
    ran: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


def run_stages(
    stages: Sequence[Stage],
    ctx: StageContext,
    *,
    check_cancelled: Callable[[], None] | None = None,
    result: PipelineResult | None = None,
) -> PipelineResult:
    """Run stages in order, stopping at the first failure.

    Args:
        stages: Stage descriptors in execution order.
        ctx: Shared stage context.
        check_cancelled: Called before each stage; raises to abort.
        result: Accumulator to fill in place (a new one if None), so the
            caller sees progress even when a stage fails.

    Returns:
        Names of the stages that ran and skipped stages with their reasons.

    Raises:
        StageFailedError: Chained to the error of the failing stage. Errors
            other than ImagegenError, OSError and ValueError propagate
            unchanged.
    """
    result = result if result is not None else PipelineResult()
    total = len(stages)

    for ordinal, stage in enumerate(stages, start=1):
        if check_cancelled is not None:
            check_cancelled()

        reason = stage.skip_if(ctx) if stage.skip_if is not None else None
        if reason:
            logger.info("[%d/%d] Skipping %s: %s", ordinal, total, stage.name, reason)
            result.skipped[stage.name] = reason
            continue

        logger.info("[%d/%d] %s", ordinal, total, stage.name)
        try:
            stage.action(ctx)
        except (ImagegenError, OSError, ValueError) as e:
            raise StageFailedError(stage.name, ordinal, e) from e
        result.ran.append(stage.name)

    return result


__all__ = [
    "PipelineResult",
    "Stage",
    "StageContext",
    "StageFailedError",
    "run_stages",
]
