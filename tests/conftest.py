"""
Pytest configuration and shared fixtures for fvf-burner tests.

No test touches a real device: external commands are mocked at the
command-runner seam and mount points are tmp_path directories.
"""

import json
import subprocess
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from fvf_burner.config import settings
from fvf_burner.domain.models import PartitionEntry, PartitionTable, TableKind
from fvf_burner.pipeline.approval import Approver


# ==============================================================================
# Approval
# ==============================================================================


class FakeApprover(Approver):
    """Scripted approver recording every plan and prompt it sees.

    Args:
        confirmations: Answer per gate key; unlisted gates get ``default``
        answers: Values for ask(); a list is consumed one value per attempt,
            so invalid values can be followed by a valid one
        choices: Values for choose()
        allow_override: Answer for capacity overrides
    """

    def __init__(
        self,
        confirmations: Optional[Dict[str, bool]] = None,
        answers: Optional[Dict[str, Any]] = None,
        choices: Optional[Dict[str, str]] = None,
        allow_override: bool = False,
        default: bool = True,
    ):
        self.confirmations = dict(confirmations or {})
        self.answers = dict(answers or {})
        self.choices = dict(choices or {})
        self.allow_override = allow_override
        self.default = default
        self.plans: List = []
        self.overrides: List = []
        self.rejected: List[str] = []
        self.messages: List[str] = []

    def confirm(self, plan):
        self.plans.append(plan)
        return self.confirmations.get(plan.key, self.default)

    def override(self, warning):
        self.overrides.append(warning)
        return self.allow_override

    def choose(self, key, prompt, options):
        value = self.choices[key]
        assert value in options
        return value

    def ask(self, key, prompt, parse):
        values = self.answers[key]
        if not isinstance(values, list):
            values = [values]
        for value in values:
            try:
                return parse(str(value))
            except ValueError:
                self.rejected.append(str(value))
        raise AssertionError(f"No valid answer scripted for {key}")

    def inform(self, message):
        self.messages.append(message)

    def plan_keys(self) -> List[str]:
        return [plan.key for plan in self.plans]


@pytest.fixture
def approver() -> FakeApprover:
    """Approver that approves every gate."""
    return FakeApprover()


@pytest.fixture
def approver_factory():
    """The FakeApprover class, for tests that script specific answers."""
    return FakeApprover


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_usb_device() -> Dict[str, Any]:
    """
    Fixture providing a USB disk record as returned by lsblk -J -b.

    Returns:
        Dict with one mounted vfat partition and one unmounted ext4 partition.
    """
    return {
        "name": "sdb",
        "path": "/dev/sdb",
        "type": "disk",
        "size": 32000000000,
        "model": "Flash Disk",
        "vendor": "Generic",
        "tran": "usb",
        "rm": True,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "pttype": "gpt",
        "parttype": None,
        "children": [
            {
                "name": "sdb1",
                "path": "/dev/sdb1",
                "type": "part",
                "size": 629145600,
                "mountpoint": "/run/media/user/EFI",
                "fstype": "vfat",
                "label": "EFI",
            },
            {
                "name": "sdb2",
                "path": "/dev/sdb2",
                "type": "part",
                "size": 15000000000,
                "mountpoint": None,
                "fstype": "ext4",
                "label": "root",
            },
        ],
    }


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    """Fixture providing the disk the running system is installed on."""
    return {
        "name": "nvme0n1",
        "path": "/dev/nvme0n1",
        "type": "disk",
        "size": 512110190592,
        "model": "Samsung SSD",
        "tran": "nvme",
        "rm": False,
        "mountpoint": None,
        "children": [
            {"name": "nvme0n1p1", "path": "/dev/nvme0n1p1", "type": "part", "mountpoint": "/boot/efi"},
            {"name": "nvme0n1p2", "path": "/dev/nvme0n1p2", "type": "part", "mountpoint": "/"},
        ],
    }


@pytest.fixture
def mock_lsblk_output(mock_usb_device, mock_system_disk) -> str:
    """Fixture providing lsblk JSON output for a system disk and a USB disk."""
    return json.dumps({"blockdevices": [mock_system_disk, mock_usb_device]})


@pytest.fixture
def parted_gpt_output() -> str:
    """parted -s -m unit MB print free output for a 32000MB GPT disk."""
    return (
        "BYT;\n"
        "/dev/sdb:32000MB:scsi:512:512:gpt:Generic Flash Disk:;\n"
        "1:0.02MB:1.05MB:1.03MB:free;\n"
        "1:1.05MB:630MB:629MB:fat32:EFI System Partition:boot, esp;\n"
        "2:630MB:1704MB:1074MB:ext4::;\n"
        "3:1704MB:16000MB:14296MB:ext4::;\n"
        "1:16000MB:32000MB:16000MB:free;\n"
    )


@pytest.fixture
def lsblk_gpt_partitions() -> str:
    """lsblk -J -b -o NAME,PARTTYPE,LABEL,FSTYPE output matching parted_gpt_output."""
    return json.dumps(
        {
            "blockdevices": [
                {
                    "name": "sdb",
                    "parttype": None,
                    "label": None,
                    "fstype": None,
                    "children": [
                        {
                            "name": "sdb1",
                            "parttype": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
                            "label": None,
                            "fstype": "vfat",
                        },
                        {
                            "name": "sdb2",
                            "parttype": "bc13c2ff-59e6-4262-a352-b275fd6f7172",
                            "label": "boot",
                            "fstype": "ext4",
                        },
                        {
                            "name": "sdb3",
                            "parttype": "0fc63daf-8483-4772-8e79-3d69d8477de4",
                            "label": "root",
                            "fstype": "ext4",
                        },
                    ],
                }
            ]
        }
    )


def make_entry(
    index: int,
    start: str,
    end: str,
    device: str = "/dev/sdb",
    type_guid: Optional[str] = None,
    label: Optional[str] = None,
    fstype: Optional[str] = "ext4",
) -> PartitionEntry:
    path = f"{device}p{index}" if device[-1].isdigit() else f"{device}{index}"
    return PartitionEntry(
        index=index,
        start_mb=Decimal(start),
        end_mb=Decimal(end),
        device_path=path,
        type_guid=type_guid,
        label=label,
        fstype=fstype,
    )


@pytest.fixture
def entry_factory():
    """Build PartitionEntry objects with string offsets."""
    return make_entry


@pytest.fixture
def gpt_table() -> PartitionTable:
    """GPT table on /dev/sdb with EFI, boot and root partitions."""
    return PartitionTable(
        device="/dev/sdb",
        kind=TableKind.GPT,
        disk_end_mb=Decimal("32000"),
        entries=(
            make_entry(1, "1.05", "630", type_guid="c12a7328-f81f-11d2-ba4b-00a0c93ec93b", fstype="vfat"),
            make_entry(2, "630", "1704", type_guid="bc13c2ff-59e6-4262-a352-b275fd6f7172", label="boot"),
            make_entry(3, "1704", "16000", type_guid="0fc63daf-8483-4772-8e79-3d69d8477de4", label="root"),
        ),
    )


# ==============================================================================
# Subprocess Fixtures
# ==============================================================================


def completed(command=None, returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(command or [], returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def completed_process():
    """Build subprocess.CompletedProcess results for mocked run_command calls."""
    return completed


@pytest.fixture
def mock_subprocess_run(mocker) -> Mock:
    """Fixture mocking subprocess.run in the command runner."""
    return mocker.patch("fvf_burner.storage.commands.subprocess.run")


@pytest.fixture
def mock_which(mocker) -> Mock:
    """Fixture making every binary appear installed."""
    return mocker.patch("fvf_burner.storage.commands.shutil.which", return_value="/usr/bin/tool")


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to temporary settings.json file.
    """
    settings_dir = tmp_path / "config"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


@pytest.fixture(autouse=True)
def default_settings(tmp_path_factory):
    """Run every test against default settings."""
    settings.load_settings(tmp_path_factory.mktemp("settings") / "missing.json")
    yield
    settings.load_settings(tmp_path_factory.mktemp("settings") / "missing.json")
