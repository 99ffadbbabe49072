"""Tests for the sequential provisioning pipeline."""

from pathlib import Path
from unittest.mock import Mock

import pytest

from fvf_burner.domain.models import (
    DeviceTarget,
    FileTarget,
    ImageSource,
    PipelineContext,
    ResizeResult,
    ResizeStage,
    TargetKind,
    TargetRequest,
)
from fvf_burner.pipeline import writer
from fvf_burner.pipeline.runner import run_pipeline
from fvf_burner.storage.exceptions import (
    ExternalToolError,
    FilesystemInconsistentError,
    OperationCancelled,
    UnsafeTargetError,
)


@pytest.fixture
def context(tmp_path):
    image = tmp_path / "fedora.raw"
    image.write_bytes(b"\0" * 512)
    return PipelineContext(
        request=TargetRequest(TargetKind.DEVICE, "sdb"),
        image=ImageSource(path=image),
    )


@pytest.fixture
def stages(mocker):
    """Patch every stage and record the order they run in."""
    calls = []

    def resolve(request, approver):
        calls.append("resolve")
        return DeviceTarget("/dev/sdb")

    def write(ctx, approver, resources, progress_callback=None):
        calls.append("write")
        return ctx

    def resize(device, approver):
        calls.append("resize")
        return ResizeResult(stage=ResizeStage.DONE, partition_index=2)

    def regenerate(ctx, approver):
        calls.append("uuid")
        return ctx

    return {
        "calls": calls,
        "resolve": mocker.patch("fvf_burner.pipeline.runner.resolve_target", side_effect=resolve),
        "write": mocker.patch("fvf_burner.pipeline.runner.write_image", side_effect=write),
        "resize": mocker.patch("fvf_burner.pipeline.runner.resize_partition", side_effect=resize),
        "uuid": mocker.patch("fvf_burner.pipeline.runner.regenerate_uuids", side_effect=regenerate),
    }


class TestRunPipeline:
    """Tests for run_pipeline()."""

    def test_stage_order(self, context, stages, approver):
        result = run_pipeline(context, approver)

        assert stages["calls"] == ["resolve", "write", "resize", "uuid"]
        assert result.target == DeviceTarget("/dev/sdb")
        assert result.resize.stage is ResizeStage.DONE
        stages["resize"].assert_called_once_with("/dev/sdb", approver)

    def test_skip_resize(self, context, stages, approver):
        result = run_pipeline(context, approver, skip_resize=True)

        assert stages["calls"] == ["resolve", "write", "uuid"]
        assert result.resize is None

    def test_skipped_resize_reported(self, context, stages, approver):
        stages["resize"].side_effect = lambda device, approver: ResizeResult(stage=ResizeStage.SKIPPED)

        run_pipeline(context, approver)

        assert "Partition resize skipped" in approver.messages
        assert stages["calls"] == ["resolve", "write", "uuid"]

    def test_failure_names_step_and_stops(self, context, stages, approver):
        """Test a failed stage aborts the run and records which step failed."""
        stages["write"].side_effect = ExternalToolError(["dd"], returncode=1, stderr="I/O error")

        with pytest.raises(ExternalToolError) as exc_info:
            run_pipeline(context, approver)

        assert exc_info.value.step == "write"
        stages["resize"].assert_not_called()
        stages["uuid"].assert_not_called()

    def test_resolve_failure_touches_nothing(self, context, stages, approver):
        stages["resolve"].side_effect = UnsafeTargetError("/dev/sda", "target is the system disk")

        with pytest.raises(UnsafeTargetError) as exc_info:
            run_pipeline(context, approver)

        assert exc_info.value.step == "resolve"
        stages["write"].assert_not_called()

    def test_existing_step_kept(self, context, stages, approver):
        """Test a step set by the stage itself is not overwritten."""
        error = FilesystemInconsistentError("/dev/sdb2", 4, "")
        error.step = "resize (after table_resized)"
        stages["resize"].side_effect = error

        with pytest.raises(FilesystemInconsistentError) as exc_info:
            run_pipeline(context, approver)

        assert exc_info.value.step == "resize (after table_resized)"

    def test_loop_released_on_failure(self, context, stages, approver):
        """Test resources registered by the write stage are released when a later stage fails."""
        release = Mock()

        def write(ctx, approver, resources, progress_callback=None):
            resources.callback(release, "/dev/loop3")
            return ctx.evolve(target=FileTarget(Path("unit.img"), backing_loop="/dev/loop3"))

        stages["write"].side_effect = write
        stages["uuid"].side_effect = ExternalToolError(["tune2fs"], returncode=1)

        with pytest.raises(ExternalToolError):
            run_pipeline(context, approver)

        release.assert_called_once_with("/dev/loop3")
        stages["resize"].assert_called_once_with("/dev/loop3", approver)

    def test_loop_released_on_success(self, context, stages, approver):
        release = Mock()

        def write(ctx, approver, resources, progress_callback=None):
            resources.callback(release, "/dev/loop3")
            return ctx.evolve(target=FileTarget(Path("unit.img"), backing_loop="/dev/loop3"))

        stages["write"].side_effect = write

        run_pipeline(context, approver)

        release.assert_called_once_with("/dev/loop3")

    def test_failed_loop_release_keeps_stage_error(self, context, stages, approver, mocker):
        """Test a losetup failure while unwinding does not replace the stage error."""
        mocker.patch(
            "fvf_burner.pipeline.writer.release_loop_device",
            side_effect=ExternalToolError(["losetup", "-d", "/dev/loop3"], returncode=1, stderr="busy"),
        )

        def write(ctx, approver, resources, progress_callback=None):
            resources.callback(writer._release_loop, "/dev/loop3")
            return ctx.evolve(target=FileTarget(Path("unit.img"), backing_loop="/dev/loop3"))

        stages["write"].side_effect = write
        stages["resize"].side_effect = FilesystemInconsistentError("/dev/loop3p2", 4)

        with pytest.raises(FilesystemInconsistentError) as exc_info:
            run_pipeline(context, approver)

        assert exc_info.value.step == "resize"

    def test_declined_uuid_change_cancels_run(self, context, stages, approver):
        stages["uuid"].side_effect = OperationCancelled("uuid.apply")

        with pytest.raises(OperationCancelled) as exc_info:
            run_pipeline(context, approver)

        assert exc_info.value.step == "uuid"
