"""Tests for stage ordering, skipping and failure propagation."""

import pytest

from rpi_imagegen.chroot.executor import ChrootExecutionError
from rpi_imagegen.cleanup import BuildInterrupted
from rpi_imagegen.stages import (
    PipelineResult,
    Stage,
    StageFailedError,
    default_stages,
    run_stages,
)


def recorder(log: list[str], name: str):
    def action(ctx):
        log.append(name)

    return action


class TestRunStages:
    """Tests for run_stages function."""

    def test_runs_in_order(self, stage_context):
        log: list[str] = []
        stages = [Stage(name, recorder(log, name)) for name in ("a", "b", "c")]

        result = run_stages(stages, stage_context)

        assert log == ["a", "b", "c"]
        assert result.ran == ["a", "b", "c"]
        assert result.skipped == {}

    def test_skip_predicate(self, stage_context):
        log: list[str] = []
        stages = [
            Stage("a", recorder(log, "a")),
            Stage("b", recorder(log, "b"), skip_if=lambda ctx: "not needed"),
            Stage("c", recorder(log, "c"), skip_if=lambda ctx: None),
        ]

        result = run_stages(stages, stage_context)

        assert log == ["a", "c"]
        assert result.skipped == {"b": "not needed"}

    def test_failure_stops_pipeline(self, stage_context):
        log: list[str] = []

        def fail(ctx):
            raise ChrootExecutionError(["locale-gen"], 1, "boom")

        stages = [
            Stage("first", recorder(log, "first")),
            Stage("second", fail),
            Stage("third", recorder(log, "third")),
        ]
        progress = PipelineResult()

        with pytest.raises(StageFailedError) as exc_info:
            run_stages(stages, stage_context, result=progress)

        error = exc_info.value
        assert error.stage_name == "second"
        assert error.ordinal == 2
        assert error.code == "stage_failed"
        assert error.message.startswith("Stage 2 (second) failed:")
        assert isinstance(error.__cause__, ChrootExecutionError)
        assert log == ["first"]
        assert progress.ran == ["first"]

    def test_os_errors_are_wrapped(self, stage_context):
        def fail(ctx):
            raise FileNotFoundError("config.txt")

        with pytest.raises(StageFailedError) as exc_info:
            run_stages([Stage("patch", fail)], stage_context)
        assert isinstance(exc_info.value.__cause__, FileNotFoundError)

    def test_undecodable_file_is_wrapped(self, stage_context):
        """A stage reading a non-UTF-8 file fails with its name attached."""

        def fail(ctx):
            raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

        with pytest.raises(StageFailedError) as exc_info:
            run_stages([Stage("configure_usb_console", fail)], stage_context)

        assert exc_info.value.stage_name == "configure_usb_console"
        assert isinstance(exc_info.value.__cause__, UnicodeDecodeError)

    def test_programming_errors_propagate(self, stage_context):
        def fail(ctx):
            raise KeyError("oops")

        with pytest.raises(KeyError):
            run_stages([Stage("broken", fail)], stage_context)

    def test_cancellation_checkpoint(self, stage_context):
        log: list[str] = []
        calls = {"n": 0}

        def check():
            calls["n"] += 1
            if calls["n"] == 2:
                raise BuildInterrupted(15)

        stages = [Stage(name, recorder(log, name)) for name in ("a", "b")]

        with pytest.raises(BuildInterrupted):
            run_stages(stages, stage_context, check_cancelled=check)
        assert log == ["a"]


def test_default_stage_order():
    names = [stage.name for stage in default_stages()]

    assert names[0] == "extract_base_system"
    assert names[-1] == "update_system"
    assert names.index("clean_boot_partition") < names.index("install_kernel")
    assert names.index("init_pacman") < names.index("remove_old_packages")
    assert names.index("remove_old_packages") < names.index("install_kernel")
    assert names.index("configure_locales") < names.index("configure_ssh")
    assert len(names) == len(set(names))


def test_optional_stages_have_predicates():
    optional = {stage.name for stage in default_stages() if stage.skip_if is not None}
    assert optional == {"configure_wifi", "configure_zerotier"}
