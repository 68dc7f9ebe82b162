"""Build orchestration.

This module handles:
- Running preflight checks
- Acquiring workspace, image file, loop device and mounts in order
- Running the provisioning stages
- Forward release of mounts and loop device, then compression
- Teardown of whatever is still held on any exit path
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from rpi_imagegen.chroot.binfmt import EmulationShim
from rpi_imagegen.chroot.executor import ChrootExecutor
from rpi_imagegen.chroot.pacman import PackageManager
from rpi_imagegen.cleanup import BuildInterrupted, CleanupController
from rpi_imagegen.config import BuildConfig
from rpi_imagegen.device.layout import DiskLayout
from rpi_imagegen.device.loop import BlockDeviceManager, LoopDevice
from rpi_imagegen.device.mount import MountManager
from rpi_imagegen.fetch import RetryPolicy, fetch_base_archive
from rpi_imagegen.finalize import compress_image, write_manifest
from rpi_imagegen.host import CommandRunner, run_command
from rpi_imagegen.preflight import run_preflight
from rpi_imagegen.stages import PipelineResult, Stage, StageContext, default_stages, run_stages
from rpi_imagegen.types import BuildResult, BuildStatus, CleanupWarning, ImagegenError
from rpi_imagegen.workspace import (
    Workspace,
    WorkspaceError,
    create_workspace,
    remove_workspace,
)

logger = logging.getLogger(__name__)


@dataclass
class BuildContext:
    """Resources held by a running build."""

    workspace: Workspace | None = None
    image_path: Path | None = None
    loop: LoopDevice | None = None
    pipeline: PipelineResult = field(default_factory=PipelineResult)
    warnings: list[CleanupWarning] = field(default_factory=list)


class Builder:
    """Runs one image build from a resolved configuration."""

    def __init__(
        self,
        config: BuildConfig,
        *,
        runner: CommandRunner = run_command,
        http_client: httpx.Client | None = None,
        cleanup: CleanupController | None = None,
        devices: BlockDeviceManager | None = None,
        mounts: MountManager | None = None,
        shim: EmulationShim | None = None,
        stages: Sequence[Stage] | None = None,
        preflight: Callable[[BuildConfig, CommandRunner], None] | None = run_preflight,
        base_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.runner = runner
        self.http_client = http_client
        self.cleanup = cleanup or CleanupController(skip_teardown=config.no_cleanup)
        self.devices = devices or BlockDeviceManager(runner, sleep=sleep)
        self.mounts = mounts or MountManager(runner)
        self.shim = shim or EmulationShim(runner)
        self.stages = list(stages) if stages is not None else default_stages()
        self.preflight = preflight
        self.base_dir = base_dir
        self.sleep = sleep
        self.context = BuildContext()
        self.status = BuildStatus.PENDING

    def run(self) -> BuildResult:
        """Run the build.

        Returns:
            BuildResult of the successful build.

        Raises:
            BuildInterrupted: If SIGINT/SIGTERM arrived during the build.
            ImagegenError: On the first fatal error. Resources are torn down
                and the workspace is kept.
        """
        success = False
        self.cleanup.install_signal_handlers()
        owns_client = self.http_client is None
        client = self.http_client or httpx.Client()
        self.status = BuildStatus.RUNNING
        try:
            result = self._run(client)
            success = True
            self.status = BuildStatus.SUCCEEDED
            return result
        except BuildInterrupted:
            self.status = BuildStatus.INTERRUPTED
            raise
        except ImagegenError as e:
            if self.cleanup.cancelled is not None:
                self.status = BuildStatus.INTERRUPTED
                raise BuildInterrupted(self.cleanup.cancelled) from e
            self.status = BuildStatus.FAILED
            raise
        finally:
            self.context.warnings = self.cleanup.teardown(success)
            self.cleanup.restore_signal_handlers()
            if owns_client:
                client.close()
            if not success and self.context.workspace is not None:
                logger.error("Workspace kept for inspection: %s", self.context.workspace.root)

    def _run(self, client: httpx.Client) -> BuildResult:
        cfg = self.config
        ctx = self.context
        checkpoint = self.cleanup.raise_if_cancelled

        logger.info("Building %s for Raspberry Pi %d", cfg.image_name, cfg.rpi_model)
        if self.preflight is not None:
            self.preflight(cfg, self.runner)
        checkpoint()

        workspace = create_workspace(cfg.workdir, self.base_dir)
        ctx.workspace = workspace
        self.cleanup.register(
            "workspace",
            lambda: remove_workspace(workspace, self.base_dir),
            on_success_only=True,
            manual=f"rm -rf {workspace.root}",
        )
        checkpoint()

        download = fetch_base_archive(
            client,
            cfg.archive_url,
            cfg.archive_md5_url,
            workspace.download_dir,
            RetryPolicy(
                attempts=cfg.download_retries,
                timeout=cfg.download_timeout,
                wait=cfg.download_retry_wait,
            ),
            sleep=self.sleep,
        )
        checkpoint()

        try:
            cfg.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(
                f"Cannot create output directory {cfg.output_dir}: {e}", code="output_dir"
            ) from e
        ctx.image_path = self.devices.allocate(cfg.output_dir / cfg.image_name, cfg.image_size)
        checkpoint()

        loop = self.devices.attach(ctx.image_path)
        ctx.loop = loop
        self.cleanup.register(
            "loop_device",
            lambda: self.devices.detach(loop),
            manual=f"losetup -d {loop.device_path}",
        )
        checkpoint()

        layout = DiskLayout(cfg.boot_partition_size)
        self.devices.partition(loop, layout)
        boot, root = self.devices.wait_for_partition_nodes(loop, layout)
        checkpoint()
        self.devices.format(boot)
        checkpoint()
        self.devices.format(root)
        checkpoint()

        self.mounts.mount_root(root, workspace.mount_dir)
        self.cleanup.register(
            "mounts",
            self.mounts.unmount_all,
            manual=f"umount -R -f -l {workspace.mount_dir}",
        )
        self.mounts.mount_boot(boot)
        checkpoint()

        chroot = ChrootExecutor(workspace.mount_dir, self.runner)
        stage_ctx = StageContext(
            config=cfg,
            root=workspace.mount_dir,
            archive_path=download.archive_path,
            output_dir=cfg.output_dir,
            runner=self.runner,
            chroot=chroot,
            pacman=PackageManager(chroot),
            shim=self.shim,
            http_client=client,
        )
        run_stages(self.stages, stage_ctx, check_cancelled=checkpoint, result=ctx.pipeline)
        checkpoint()

        self.mounts.unmount_boot()
        self.mounts.unmount_root()
        self.cleanup.discard("mounts")
        self.devices.detach(loop)
        self.cleanup.discard("loop_device")
        checkpoint()

        artifact = compress_image(
            ctx.image_path, keep_raw=cfg.keep_raw_image, runner=self.runner
        )
        manifest = write_manifest(
            artifact,
            rpi_model=cfg.rpi_model,
            hostname=cfg.hostname,
            build_date=cfg.build_date,
            short_sha=cfg.short_sha,
            stages_run=ctx.pipeline.ran,
            stages_skipped=ctx.pipeline.skipped,
        )

        logger.info("Build complete: %s", artifact)
        return BuildResult(
            success=True,
            status=BuildStatus.SUCCEEDED,
            artifact_path=artifact,
            root_password=cfg.root_password,
            root_password_path=stage_ctx.root_password_path,
            manifest_path=manifest,
            stages_run=list(ctx.pipeline.ran),
            stages_skipped=dict(ctx.pipeline.skipped),
        )


__all__ = ["BuildContext", "Builder"]
