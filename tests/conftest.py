"""Shared fixtures.

Nothing here touches real block devices: commands go through FakeRunner,
which records argv and replies from scripted rules.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import httpx
import pytest

from rpi_imagegen.chroot.binfmt import EmulationShim
from rpi_imagegen.chroot.executor import ChrootExecutor
from rpi_imagegen.chroot.pacman import PackageManager
from rpi_imagegen.config import BuildConfig, Settings, resolve_build_config
from rpi_imagegen.host import CommandError, format_argv
from rpi_imagegen.stages.pipeline import StageContext
from rpi_imagegen.types import CommandResult

# Environment variables read by Settings; cleared so the host cannot leak in
SETTINGS_ENV = [name.upper() for name in Settings.model_fields]


@dataclass
class Rule:
    prefix: tuple[str, ...]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    times: int | None = None
    effect: Callable[[list[str]], None] | None = None


class FakeRunner:
    """Records commands and answers them from rules (newest rule first)."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.rules: list[Rule] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        times: int | None = None,
        effect: Callable[[list[str]], None] | None = None,
    ) -> "FakeRunner":
        self.rules.append(Rule(tuple(prefix), returncode, stdout, stderr, times, effect))
        return self

    def _match(self, argv: list[str]) -> Rule | None:
        for rule in reversed(self.rules):
            if rule.times == 0:
                continue
            if tuple(argv[: len(rule.prefix)]) == rule.prefix:
                if rule.times is not None:
                    rule.times -= 1
                return rule
        return None

    def __call__(
        self,
        argv: Sequence[str],
        *,
        input_text: str | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.inputs.append(input_text)

        rule = self._match(argv)
        if rule is not None and rule.effect is not None:
            rule.effect(argv)
        result = CommandResult(
            argv=argv,
            returncode=rule.returncode if rule else 0,
            stdout=rule.stdout if rule else "",
            stderr=rule.stderr if rule else "",
        )
        if check and result.returncode != 0:
            raise CommandError(
                f"Command failed with exit code {result.returncode}: {format_argv(argv)}",
                argv,
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return result

    def commands(self, name: str) -> list[list[str]]:
        return [call for call in self.calls if call and call[0] == name]

    def chroot_commands(self) -> list[list[str]]:
        """Commands run through arch-chroot, without the chroot prefix."""
        return [call[2:] for call in self.commands("arch-chroot")]

    def index(self, *prefix: str) -> int:
        """Position of the first call starting with ``prefix``."""
        for i, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return i
        raise AssertionError(f"{prefix} was not called: {self.calls}")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolate every test from the host environment and any .env file."""
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., BuildConfig]:
    """Factory for resolved configurations with deterministic derived values."""

    def factory(**overrides: Any) -> BuildConfig:
        values = {
            "output_dir": tmp_path / "out",
            "root_password": "hunter2-password",
        }
        values.update(overrides)
        return resolve_build_config(
            values,
            settings=Settings(_env_file=None),
            short_sha="abc1234",
            today=date(2024, 1, 2),
        )

    return factory


@pytest.fixture
def build_config(make_config: Callable[..., BuildConfig]) -> BuildConfig:
    return make_config()


@pytest.fixture
def target_root(tmp_path: Path) -> Path:
    """A minimal extracted root with an empty /boot."""
    root = tmp_path / "mnt"
    (root / "boot").mkdir(parents=True)
    (root / "etc").mkdir()
    return root


@pytest.fixture
def stage_context(
    tmp_path: Path, target_root: Path, runner: FakeRunner, build_config: BuildConfig
):
    chroot = ChrootExecutor(target_root, runner)
    qemu = tmp_path / "qemu-aarch64-static"
    qemu.write_bytes(b"\x7fELF")
    with httpx.Client() as client:
        yield StageContext(
            config=build_config,
            root=target_root,
            archive_path=tmp_path / "base.tar.gz",
            output_dir=build_config.output_dir,
            runner=runner,
            chroot=chroot,
            pacman=PackageManager(chroot),
            shim=EmulationShim(runner, binfmt_dir=tmp_path / "binfmt", qemu_binary=qemu),
            http_client=client,
        )
