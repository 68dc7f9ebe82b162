"""End-to-end tests of the build orchestration.

Block devices, mounts and chroot commands are simulated: FakeRunner answers
every host command, loop and partition nodes are plain files under a
temporary /dev, and a temporary file stands in for /proc/mounts.
"""

import hashlib
import signal
import stat
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
import respx

from rpi_imagegen.builder import Builder
from rpi_imagegen.chroot.binfmt import EmulationShim
from rpi_imagegen.chroot.executor import ChrootExecutionError
from rpi_imagegen.cleanup import BuildInterrupted, CleanupController
from rpi_imagegen.device.loop import BlockDeviceManager
from rpi_imagegen.device.mount import MountManager
from rpi_imagegen.fetch import ChecksumMismatchError
from rpi_imagegen.stages import Stage, StageFailedError
from rpi_imagegen.stages.configure import (
    configure_hostname,
    configure_root_password,
    configure_wifi,
    skip_wifi,
)
from rpi_imagegen.types import BuildStatus
from rpi_imagegen.workspace import WorkspaceError

ARCHIVE = b"base root filesystem"


def fake_zstd(argv: list[str]) -> None:
    Path(argv[-1]).write_bytes(b"zst")


def fake_mknod(path, mode=0o600, device=0):
    Path(path).touch()


class Harness:
    """Wires a Builder to fake devices under ``tmp_path``."""

    def __init__(self, tmp_path: Path, runner, config, cleanup=None):
        self.tmp_path = tmp_path
        self.runner = runner
        self.config = config
        self.dev_dir = tmp_path / "dev"
        self.dev_dir.mkdir(exist_ok=True)
        self.loop = self.dev_dir / "loop7"
        for node in ("loop7p1", "loop7p2"):
            (self.dev_dir / node).touch()
        self.mounts_file = tmp_path / "mounts"
        self.mounts_file.write_text("proc /proc proc rw 0 0\n")
        self.base_dir = tmp_path / "work"
        self.base_dir.mkdir(exist_ok=True)
        self.cleanup = cleanup or CleanupController(skip_teardown=config.no_cleanup)

        runner.on("losetup", "--find", stdout=f"{self.loop}\n")
        runner.on("zstd", effect=fake_zstd)

    def add_mount(self, target: Path) -> None:
        with self.mounts_file.open("a") as handle:
            handle.write(f"/dev/loop7p2 {target.resolve()} ext4 rw 0 0\n")

    def builder(self, stages, client: httpx.Client) -> Builder:
        return Builder(
            self.config,
            runner=self.runner,
            http_client=client,
            cleanup=self.cleanup,
            devices=BlockDeviceManager(
                self.runner, sleep=lambda s: None, dev_dir=self.dev_dir
            ),
            mounts=MountManager(self.runner, mounts_file=self.mounts_file),
            shim=EmulationShim(self.runner, binfmt_dir=self.tmp_path / "binfmt"),
            stages=stages,
            preflight=None,
            base_dir=self.base_dir,
            sleep=lambda s: None,
        )

    def workspaces(self) -> list[Path]:
        return sorted(self.base_dir.glob("rpi-build.*"))


@pytest.fixture
def small_config(make_config):
    def factory(**overrides):
        values = {"image_size": "64M", "boot_partition_size": "32M"}
        values.update(overrides)
        return make_config(**values)

    return factory


@pytest.fixture
def mirror(small_config):
    """Serve the base archive and its digest for the default configuration."""
    config = small_config()
    digest = hashlib.md5(ARCHIVE).hexdigest()
    with respx.mock:
        respx.get(config.archive_url).mock(return_value=httpx.Response(200, content=ARCHIVE))
        md5_route = respx.get(config.archive_md5_url).mock(
            return_value=httpx.Response(200, text=f"{digest}  {config.archive_name}\n")
        )
        with httpx.Client() as client:
            yield client, md5_route


@pytest.fixture(autouse=True)
def fake_nodes():
    with patch("rpi_imagegen.device.loop.os.mknod", side_effect=fake_mknod):
        yield


class TestSuccessfulBuild:
    """Tests for a build that runs to completion."""

    STAGES = [
        Stage("configure_hostname", configure_hostname),
        Stage("configure_root_password", configure_root_password),
        Stage("configure_wifi", configure_wifi, skip_if=skip_wifi),
    ]

    def test_produces_artifacts(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        config = small_config()
        harness = Harness(tmp_path, runner, config)
        builder = harness.builder(self.STAGES, client)

        result = builder.run()

        out = config.output_dir
        assert result.success is True
        assert result.status == BuildStatus.SUCCEEDED
        assert builder.status == BuildStatus.SUCCEEDED
        assert result.artifact_path == out / f"{config.image_name}.zst"
        assert result.artifact_path.exists()
        assert not (out / config.image_name).exists()
        assert result.manifest_path.exists()
        assert result.stages_run == ["configure_hostname", "configure_root_password"]
        assert result.stages_skipped == {"configure_wifi": "no WiFi credentials provided"}
        assert result.root_password == "hunter2-password"
        assert result.root_password_path == out / "root_password.txt"
        assert stat.S_IMODE(result.root_password_path.stat().st_mode) == 0o600
        assert harness.workspaces() == []
        assert builder.cleanup.pending == []
        assert builder.context.warnings == []

    def test_resource_order(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        harness = Harness(tmp_path, runner, small_config())

        harness.builder(self.STAGES, client).run()

        loop = str(harness.loop)
        order = [
            runner.index("losetup", "--find"),
            runner.index("sfdisk"),
            runner.index("mkfs.vfat"),
            runner.index("mkfs.ext4"),
            runner.index("mount", f"{loop}p2"),
            runner.index("mount", f"{loop}p1"),
            runner.index("arch-chroot"),
            runner.index("umount"),
            runner.index("losetup", "-d", loop),
            runner.index("zstd"),
        ]
        assert order == sorted(order)
        umounts = runner.commands("umount")
        assert umounts[0][-1].endswith("/root/boot")
        assert umounts[1][:2] == ["umount", "-R"]

    def test_keep_raw_image(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        config = small_config(keep_raw_image=True)

        Harness(tmp_path, runner, config).builder([], client).run()

        assert (config.output_dir / config.image_name).exists()


class TestFailedBuild:
    """Tests for teardown after a failure."""

    def test_stage_failure_tears_down_in_reverse(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        harness = Harness(tmp_path, runner, small_config())

        def fail(ctx):
            harness.add_mount(ctx.root)
            harness.add_mount(ctx.boot)
            raise ChrootExecutionError(["locale-gen"], 1, "no such locale")

        builder = harness.builder([Stage("configure_locales", fail)], client)

        with pytest.raises(StageFailedError) as exc_info:
            builder.run()

        assert exc_info.value.stage_name == "configure_locales"
        assert builder.status == BuildStatus.FAILED
        assert runner.commands("zstd") == []

        umounts = runner.commands("umount")
        assert len(umounts) == 2
        assert all(argv[:4] == ["umount", "-R", "-f", "-l"] for argv in umounts)
        assert umounts[0][-1].endswith("/root/boot")
        assert runner.index("umount") < runner.index("losetup", "-d", str(harness.loop))
        # kept for inspection
        assert len(harness.workspaces()) == 1

    def test_checksum_mismatch_acquires_no_device(self, tmp_path, runner, small_config, mirror):
        client, md5_route = mirror
        md5_route.mock(return_value=httpx.Response(200, text="0" * 32 + "\n"))
        config = small_config()
        builder = Harness(tmp_path, runner, config).builder([], client)

        with pytest.raises(ChecksumMismatchError):
            builder.run()

        assert runner.commands("losetup") == []
        assert not (config.output_dir / config.image_name).exists()
        assert builder.status == BuildStatus.FAILED

    def test_no_cleanup_leaves_resources(self, tmp_path, runner, small_config, mirror, caplog):
        client, _ = mirror
        harness = Harness(tmp_path, runner, small_config(no_cleanup=True))

        def fail(ctx):
            raise ChrootExecutionError(["locale-gen"], 1)

        with pytest.raises(StageFailedError):
            harness.builder([Stage("configure_locales", fail)], client).run()

        assert runner.commands("umount") == []
        assert ["losetup", "-d", str(harness.loop)] not in runner.calls
        assert f"losetup -d {harness.loop}" in caplog.text

    def test_unusable_output_dir(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        builder = Harness(tmp_path, runner, small_config(output_dir=blocker / "out")).builder(
            [], client
        )

        with pytest.raises(WorkspaceError) as exc_info:
            builder.run()

        assert exc_info.value.code == "output_dir"
        assert runner.commands("losetup") == []
        assert builder.status == BuildStatus.FAILED


class TestSequentialBuilds:
    """Tests for builds run one after another on the same host."""

    def test_second_build_starts_clean(self, tmp_path, runner, small_config, mirror):
        """A failed build leaves nothing mounted for the next one to trip over."""
        client, _ = mirror
        harness = Harness(tmp_path, runner, small_config())

        def umount(argv: list[str]) -> None:
            target = Path(argv[-1]).resolve()
            lines = harness.mounts_file.read_text().splitlines(keepends=True)
            kept = [
                line
                for line in lines
                if not Path(line.split()[1]).is_relative_to(target)
            ]
            harness.mounts_file.write_text("".join(kept))

        runner.on("umount", effect=umount)

        def fail(ctx):
            harness.add_mount(ctx.root)
            harness.add_mount(ctx.boot)
            raise ChrootExecutionError(["locale-gen"], 1)

        first = harness.builder([Stage("configure_locales", fail)], client)
        with pytest.raises(StageFailedError):
            first.run()
        first_workspace = first.context.workspace.root

        mounts = MountManager(runner, mounts_file=harness.mounts_file)
        assert mounts.mounts_under(first_workspace) == []

        harness.cleanup = CleanupController()
        second = harness.builder([], client)
        result = second.run()

        assert result.success is True
        assert second.context.workspace.root != first_workspace
        assert harness.workspaces() == [first_workspace]
        attaches = [i for i, argv in enumerate(runner.calls) if argv[:2] == ["losetup", "--find"]]
        detaches = [
            i
            for i, argv in enumerate(runner.calls)
            if argv == ["losetup", "-d", str(harness.loop)]
        ]
        assert len(attaches) == 2
        assert len(detaches) == 2
        assert detaches[0] < attaches[1]


class TestInterruptedBuild:
    """Tests for SIGINT/SIGTERM handling."""

    def test_signal_stops_at_next_checkpoint(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        controller = CleanupController()
        harness = Harness(tmp_path, runner, small_config(), cleanup=controller)
        log: list[str] = []

        def interrupted(ctx):
            log.append("first")
            controller._handle_signal(signal.SIGTERM, None)

        stages = [
            Stage("first", interrupted),
            Stage("second", lambda ctx: log.append("second")),
        ]
        builder = harness.builder(stages, client)

        with pytest.raises(BuildInterrupted) as exc_info:
            builder.run()

        assert exc_info.value.exit_code == 128 + signal.SIGTERM
        assert builder.status == BuildStatus.INTERRUPTED
        assert log == ["first"]
        assert ["losetup", "-d", str(harness.loop)] in runner.calls
        assert runner.commands("zstd") == []
        assert len(harness.workspaces()) == 1

    def test_error_after_signal_reports_interrupt(self, tmp_path, runner, small_config, mirror):
        client, _ = mirror
        controller = CleanupController()
        harness = Harness(tmp_path, runner, small_config(), cleanup=controller)

        def interrupted_command(ctx):
            controller._handle_signal(signal.SIGINT, None)
            raise ChrootExecutionError(["pacman", "-Syu"], 130)

        builder = harness.builder([Stage("update_system", interrupted_command)], client)

        with pytest.raises(BuildInterrupted) as exc_info:
            builder.run()
        assert exc_info.value.exit_code == 130
