"""Tests for target resolution and the safety guard."""

from collections import namedtuple
from unittest.mock import Mock

import pytest

from fvf_burner.domain.models import DeviceTarget, FileTarget, TargetKind, TargetRequest
from fvf_burner.pipeline import resolver
from fvf_burner.storage.exceptions import (
    CapacityWarning,
    ExternalToolError,
    OperationCancelled,
    TargetBusyError,
    UnsafeTargetError,
)

DiskUsage = namedtuple("DiskUsage", "total used free")


@pytest.fixture
def device_env(mocker, mock_usb_device):
    """Patch device queries so /dev/sdb looks like a mounted USB disk."""
    mocker.patch("fvf_burner.pipeline.resolver.validate_block_device")
    mocker.patch("fvf_burner.pipeline.resolver.devices.get_block_device", return_value=mock_usb_device)
    mocker.patch("fvf_burner.pipeline.resolver.devices.get_device_size", return_value=32000000000)
    unmount = mocker.patch("fvf_burner.pipeline.resolver.devices.unmount_mountpoint")
    mocker.patch("fvf_burner.pipeline.resolver.devices.read_mount_table", return_value=[])
    mocker.patch("fvf_burner.pipeline.resolver.devices.is_mountpoint_active", return_value=False)
    return unmount


class TestResolveDeviceTarget:
    """Tests for device targets."""

    def test_resolves_and_unmounts(self, device_env, approver):
        """Test confirmation, unmount and normalized path."""
        target = resolver.resolve_device_target("sdb", approver, root_source="/dev/nvme0n1p2")

        assert target == DeviceTarget(path="/dev/sdb")
        assert approver.plan_keys() == ["target.confirm", "target.unmount"]
        assert "/dev/sdb" in approver.plans[0].title
        device_env.assert_called_once_with("/run/media/user/EFI")

    @pytest.mark.parametrize("name", ["/dev/sdb", "sdb", "/dev/sdb1", "sdb2"])
    def test_root_device_rejected(self, mocker, mock_usb_device, approver, name):
        """Test the root disk is rejected with or without a partition number."""
        mocker.patch("fvf_burner.pipeline.resolver.validate_block_device")
        mocker.patch("fvf_burner.pipeline.resolver.devices.get_block_device", return_value=mock_usb_device)

        with pytest.raises(UnsafeTargetError, match="system disk"):
            resolver.resolve_device_target(name, approver, root_source="/dev/sdb2")

        assert approver.plans == []

    def test_system_disk_tree_rejected(self, mocker, mock_system_disk, approver):
        """Test a disk holding / is rejected even if root source is unknown."""
        mocker.patch("fvf_burner.pipeline.resolver.validate_block_device")
        mocker.patch("fvf_burner.pipeline.resolver.devices.get_block_device", return_value=mock_system_disk)

        with pytest.raises(UnsafeTargetError):
            resolver.resolve_device_target("nvme0n1", approver, root_source="overlay")

    def test_not_confirmed(self, device_env, approver_factory):
        """Test declining the target is a clean cancel before any unmount."""
        approver = approver_factory(confirmations={"target.confirm": False})

        with pytest.raises(OperationCancelled):
            resolver.resolve_device_target("sdb", approver, root_source="/dev/sda2")

        device_env.assert_not_called()

    def test_unmount_declined(self, device_env, approver_factory):
        approver = approver_factory(confirmations={"target.unmount": False})

        with pytest.raises(TargetBusyError, match="unmount declined"):
            resolver.resolve_device_target("sdb", approver, root_source="/dev/sda2")

        device_env.assert_not_called()

    def test_unmount_failed(self, device_env, approver):
        device_env.side_effect = ExternalToolError(["umount"], returncode=32, stderr="target is busy")

        with pytest.raises(TargetBusyError, match="target is busy") as exc_info:
            resolver.resolve_device_target("sdb", approver, root_source="/dev/sda2")

        assert exc_info.value.mountpoint == "/run/media/user/EFI"

    def test_select_device_when_not_given(self, device_env, mocker, mock_usb_device, approver_factory):
        """Test candidate disks are listed and the chosen one resolved."""
        mocker.patch(
            "fvf_burner.pipeline.resolver.devices.list_candidate_disks",
            return_value=[mock_usb_device],
        )
        approver = approver_factory(answers={"target.device": ["", "sdb"]})

        target = resolver.resolve_target(
            TargetRequest(kind=TargetKind.DEVICE, path=""), approver, root_source="/dev/sda2"
        )

        assert target.path == "/dev/sdb"
        assert approver.rejected == [""]
        assert any("/dev/sdb" in message for message in approver.messages)


class TestResolveFileTarget:
    """Tests for file targets."""

    def test_existing_file_used_as_is(self, tmp_path, approver):
        path = tmp_path / "unit.img"
        path.write_bytes(b"\0" * 1024)

        target = resolver.resolve_target(TargetRequest(TargetKind.FILE, str(path)), approver)

        assert target == FileTarget(path=path)
        assert approver.plans == []

    def test_directory_rejected(self, tmp_path, approver):
        with pytest.raises(UnsafeTargetError, match="not a regular file"):
            resolver.resolve_file_target(str(tmp_path), approver)

    def test_missing_directory_rejected(self, tmp_path, approver):
        with pytest.raises(UnsafeTargetError, match="does not exist"):
            resolver.resolve_file_target(str(tmp_path / "nope" / "unit.img"), approver)

    def test_creates_missing_file(self, mocker, tmp_path, approver_factory):
        """Test a new file is zero-filled to the requested size."""
        mocker.patch(
            "fvf_burner.pipeline.resolver.shutil.disk_usage",
            return_value=DiskUsage(0, 0, 100 * 1024**3),
        )
        run = mocker.patch("fvf_burner.pipeline.resolver.run_checked_with_streaming_progress")
        approver = approver_factory(answers={"target.file_size": ["0", "abc", "16000"]})
        path = tmp_path / "unit.img"

        target = resolver.resolve_file_target(str(path), approver)

        assert target.path == path
        assert approver.rejected == ["0", "abc"]
        command = run.call_args.args[0]
        assert command == ["dd", "if=/dev/zero", f"of={path}", "bs=1M", "count=16000", "status=progress"]
        assert run.call_args.kwargs["total_bytes"] == 16000 * 1024 * 1024

    def test_creation_declined(self, tmp_path, approver_factory):
        approver = approver_factory(confirmations={"target.create": False})

        with pytest.raises(OperationCancelled):
            resolver.resolve_file_target(str(tmp_path / "unit.img"), approver)

    def test_insufficient_space_requires_override(self, mocker, tmp_path, approver_factory):
        """Test a file larger than free space halts unless overridden."""
        mocker.patch(
            "fvf_burner.pipeline.resolver.shutil.disk_usage",
            return_value=DiskUsage(0, 0, 1024**3),
        )
        run = mocker.patch("fvf_burner.pipeline.resolver.run_checked_with_streaming_progress")
        approver = approver_factory(answers={"target.file_size": "2048"})

        with pytest.raises(CapacityWarning):
            resolver.resolve_file_target(str(tmp_path / "unit.img"), approver)

        run.assert_not_called()
        assert len(approver.overrides) == 1

    def test_insufficient_space_overridden(self, mocker, tmp_path, approver_factory):
        mocker.patch(
            "fvf_burner.pipeline.resolver.shutil.disk_usage",
            return_value=DiskUsage(0, 0, 1024**3),
        )
        run = mocker.patch("fvf_burner.pipeline.resolver.run_checked_with_streaming_progress", return_value=Mock())
        approver = approver_factory(answers={"target.file_size": "2048"}, allow_override=True)

        resolver.resolve_file_target(str(tmp_path / "unit.img"), approver)

        run.assert_called_once()


class TestReleaseMountpoints:
    def test_still_mounted_after_umount(self, mocker, mock_usb_device, approver):
        """Test a mountpoint that survives umount is reported as busy."""
        mocker.patch("fvf_burner.pipeline.resolver.devices.unmount_mountpoint")
        mocker.patch("fvf_burner.pipeline.resolver.devices.is_mountpoint_active", return_value=True)
        mocker.patch("fvf_burner.pipeline.resolver.devices.read_mount_table", return_value=[])

        with pytest.raises(TargetBusyError, match="still mounted"):
            resolver.release_mountpoints("/dev/sdb", mock_usb_device, approver)

    def test_every_mount_of_a_partition_released(self, mocker, mock_usb_device, approver):
        """Test a partition mounted in two places is unmounted from both."""
        unmount = mocker.patch("fvf_burner.pipeline.resolver.devices.unmount_mountpoint")
        mocker.patch("fvf_burner.pipeline.resolver.devices.is_mountpoint_active", return_value=False)
        mocker.patch(
            "fvf_burner.pipeline.resolver.devices.read_mount_table",
            return_value=[("/dev/sdb1", "/run/media/user/EFI"), ("/dev/sdb1", "/mnt/efi")],
        )

        resolver.release_mountpoints("/dev/sdb", mock_usb_device, approver)

        assert [call.args[0] for call in unmount.call_args_list] == ["/run/media/user/EFI", "/mnt/efi"]
        assert approver.plan_keys() == ["target.unmount", "target.unmount"]
