"""Partition resize controller.

Grows one partition into the free space after it and then grows its
filesystem to match. Progress is tracked as a :class:`ResizeStage`::

    IDLE -> TABLE_READ -> (SKIPPED) -> NEW_END_COMPUTED -> TABLE_RESIZED
         -> FILESYSTEM_CHECKED -> FILESYSTEM_GROWN -> DONE

A failure halts the controller at the last completed stage; later stages
are never attempted. In particular the filesystem is never grown when its
check fails.
"""

from __future__ import annotations

from decimal import Decimal
from functools import partial
from typing import Optional

from fvf_burner.domain.models import PartitionEntry, PartitionTable, ResizeResult, ResizeStage, TableKind
from fvf_burner.logging import LoggerFactory
from fvf_burner.storage.commands import run_command
from fvf_burner.storage.exceptions import (
    FilesystemInconsistentError,
    ProvisioningError,
    UnsupportedFilesystemError,
)
from fvf_burner.storage.partition_table import read_partition_table
from fvf_burner.storage.validation import validate_custom_end

from .approval import Approver, Plan

GROWABLE_FILESYSTEMS = {"ext2", "ext3", "ext4"}
# e2fsck: 0 = clean, 1 = errors corrected
E2FSCK_OK_CODES = (0, 1)

MODE_MAX = "max"
MODE_CUSTOM = "custom"

log = LoggerFactory.for_resize()


def _parse_index(table: PartitionTable, value: str) -> int:
    text = value.strip()
    if not text.isdigit():
        raise ValueError(f"partition number must be a whole number, got {value!r}")
    index = int(text)
    if table.get(index) is None:
        raise ValueError(f"no partition {index}; choose one of {table.indices()}")
    return index


def describe_table(table: PartitionTable) -> tuple[str, ...]:
    lines = [f"Disk {table.device}: {table.disk_end_mb}MB, {table.kind.value} table"]
    for entry in table.entries:
        lines.append(
            f"{entry.index}: {entry.start_mb}MB - {entry.end_mb}MB "
            f"({entry.size_mb}MB) {entry.fstype or ''}".rstrip()
        )
    for region in table.free_regions:
        lines.append(f"free: {region.start_mb}MB - {region.end_mb}MB ({region.size_mb}MB)")
    return tuple(lines)


class ResizeController:
    """Drives one partition resize on ``device`` through the resize stages."""

    def __init__(self, device: str, approver: Approver):
        self.device = device
        self.approver = approver
        self.stage = ResizeStage.IDLE
        self.table: Optional[PartitionTable] = None
        self.entry: Optional[PartitionEntry] = None
        self.new_end_mb: Optional[Decimal] = None

    def _advance(self, stage: ResizeStage) -> None:
        log.debug(f"Resize {self.device}: {self.stage.value} -> {stage.value}")
        self.stage = stage

    def result(self) -> ResizeResult:
        return ResizeResult(
            stage=self.stage,
            partition_index=self.entry.index if self.entry else None,
            partition_path=self.entry.device_path if self.entry else None,
            old_end_mb=self.entry.end_mb if self.entry else None,
            new_end_mb=self.new_end_mb,
        )

    def read_table(self) -> PartitionTable:
        self.table = read_partition_table(self.device)
        self._advance(ResizeStage.TABLE_READ)
        return self.table

    def offer(self) -> bool:
        plan = Plan(
            key="resize.offer",
            title=f"Expand a partition on {self.device}?",
            details=describe_table(self.table),
        )
        return self.approver.confirm(plan)

    def choose_partition(self) -> PartitionEntry:
        index = self.approver.ask(
            "resize.partition",
            "Partition number to expand",
            partial(_parse_index, self.table),
        )
        self.entry = self.table.get(index)
        return self.entry

    def compute_new_end(self) -> Decimal:
        entry = self.entry
        max_end = self.table.max_end_mb(entry.index)
        self.approver.inform(
            f"Partition {entry.index}: start {entry.start_mb}MB, end {entry.end_mb}MB; "
            f"maximum available end {max_end}MB"
        )
        mode = self.approver.choose(
            "resize.mode",
            "Use all available space or a custom end point",
            (MODE_MAX, MODE_CUSTOM),
        )
        if mode == MODE_MAX:
            new_end = max_end
        else:
            new_end = self.approver.ask(
                "resize.end",
                f"End point in MB (greater than {entry.end_mb}, at most {max_end})",
                partial(validate_custom_end, current_end_mb=entry.end_mb, max_end_mb=max_end),
            )
        self.new_end_mb = new_end
        self._advance(ResizeStage.NEW_END_COMPUTED)
        return new_end

    def _require_growable(self) -> None:
        fstype = (self.entry.fstype or "").lower()
        if fstype not in GROWABLE_FILESYSTEMS:
            raise UnsupportedFilesystemError(self.entry.device_path, self.entry.fstype, "grow")

    def _format_end(self) -> str:
        return f"{self.new_end_mb.normalize():f}MB"

    def _table_commands(self) -> list[list[str]]:
        commands = []
        if self.table.kind is TableKind.GPT:
            # the backup header of a smaller image sits at the old image end
            commands.append(["sgdisk", "-e", self.device])
        commands.append(
            ["parted", "-s", self.device, "resizepart", str(self.entry.index), self._format_end()]
        )
        return commands

    def apply_plan(self) -> Plan:
        path = self.entry.device_path
        return Plan(
            key="resize.apply",
            title=f"Expand partition {self.entry.index} on {self.device} to end at {self._format_end()}",
            commands=tuple(tuple(command) for command in self._table_commands())
            + (("e2fsck", "-f", "-p", path), ("resize2fs", path)),
        )

    def resize_table(self) -> None:
        for command in self._table_commands():
            run_command(command)
        self._advance(ResizeStage.TABLE_RESIZED)

    def check_filesystem(self) -> None:
        path = self.entry.device_path
        result = run_command(["e2fsck", "-f", "-p", path], check=False)
        if result.returncode not in E2FSCK_OK_CODES:
            raise FilesystemInconsistentError(
                path, result.returncode, (result.stderr or result.stdout or "").strip()
            )
        if result.returncode == 1:
            log.warning(f"e2fsck corrected errors on {path}")
        self._advance(ResizeStage.FILESYSTEM_CHECKED)

    def grow_filesystem(self) -> None:
        run_command(["resize2fs", self.entry.device_path])
        self._advance(ResizeStage.FILESYSTEM_GROWN)

    def run(self) -> ResizeResult:
        """Run the controller from IDLE to DONE (or SKIPPED).

        Raises:
            ProvisioningError: With ``step`` naming the stage that failed
        """
        try:
            self.read_table()
            if not self.offer():
                self._advance(ResizeStage.SKIPPED)
                return self.result()
            self.choose_partition()
            self.compute_new_end()
            if not self.approver.confirm(self.apply_plan()):
                self._advance(ResizeStage.SKIPPED)
                return self.result()
            self._require_growable()
            self.resize_table()
            self.check_filesystem()
            self.grow_filesystem()
        except ProvisioningError as error:
            if error.step is None:
                error.step = f"resize (after {self.stage.value})"
            log.error(f"Resize halted after {self.stage.value}: {error}")
            raise
        self._advance(ResizeStage.DONE)
        log.info(f"Partition {self.entry.index} on {self.device} now ends at {self._format_end()}")
        return self.result()


def resize_partition(device: str, approver: Approver) -> ResizeResult:
    return ResizeController(device, approver).run()
