"""Partition table reading.

Geometry comes from ``parted -s -m <device> unit MB print free``, whose
machine-readable output looks like::

    BYT;
    /dev/sdb:32000MB:scsi:512:512:gpt:Generic Flash Disk:;
    1:0.02MB:1.05MB:1.03MB:free;
    1:1.05MB:630MB:629MB:fat32:EFI System Partition:boot, esp;
    2:630MB:1704MB:1074MB:ext4::;
    1:1704MB:32000MB:30296MB:free;

Partition type GUIDs and filesystem labels are not in that output, so they
are merged in from ``lsblk -J -b -o NAME,PARTTYPE,LABEL,FSTYPE``, matching
children by partition number.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Optional

from fvf_burner.domain.models import FreeRegion, PartitionEntry, PartitionTable, TableKind
from fvf_burner.logging import LoggerFactory

from .commands import run_checked_command
from .devices import get_children, get_partition_number, partition_device_path
from .exceptions import ExternalToolError

log = LoggerFactory.for_resize()


def parse_mb(value: str) -> Decimal:
    """Parse a parted "MB" quantity ("1.05MB", "32000MB") into a Decimal."""
    text = value.strip()
    if text.upper().endswith("MB"):
        text = text[:-2]
    try:
        return Decimal(text)
    except InvalidOperation as error:
        raise ValueError(f"Unrecognized parted size: {value!r}") from error


def parse_parted_machine_output(device: str, output: str) -> PartitionTable:
    """Build a PartitionTable from ``parted -m ... unit MB print free`` output.

    Raises:
        ValueError: If the disk line is missing or malformed
    """
    disk_end: Optional[Decimal] = None
    kind = TableKind.UNKNOWN
    entries: list[PartitionEntry] = []
    free_regions: list[FreeRegion] = []
    for raw_line in output.splitlines():
        line = raw_line.strip().rstrip(";")
        if not line or line in ("BYT", "CHS", "CYL"):
            continue
        fields = line.split(":")
        if disk_end is None and fields[0].startswith("/"):
            if len(fields) < 6:
                raise ValueError(f"Malformed parted disk line: {raw_line!r}")
            disk_end = parse_mb(fields[1])
            kind = TableKind.from_label(fields[5])
            continue
        if len(fields) < 5 or not fields[0].isdigit():
            continue
        start = parse_mb(fields[1])
        end = parse_mb(fields[2])
        if fields[4] == "free":
            free_regions.append(FreeRegion(start_mb=start, end_mb=end))
            continue
        index = int(fields[0])
        name = fields[5] if len(fields) > 5 and kind is TableKind.GPT else None
        entries.append(
            PartitionEntry(
                index=index,
                start_mb=start,
                end_mb=end,
                device_path=partition_device_path(device, index),
                fstype=fields[4] or None,
                name=name or None,
            )
        )
    if disk_end is None:
        raise ValueError(f"parted output for {device} has no disk line")
    entries.sort(key=lambda entry: entry.index)
    return PartitionTable(
        device=device,
        kind=kind,
        disk_end_mb=disk_end,
        entries=tuple(entries),
        free_regions=tuple(free_regions),
    )


def _lsblk_partition_details(device: str) -> dict[int, dict]:
    output = run_checked_command(
        ["lsblk", "-J", "-b", "-o", "NAME,PARTTYPE,LABEL,FSTYPE", device]
    )
    data = json.loads(output)
    details: dict[int, dict] = {}
    for disk in data.get("blockdevices", []):
        for child in get_children(disk):
            number = get_partition_number(child.get("name"))
            if number is not None:
                details[number] = child
    return details


def merge_partition_details(table: PartitionTable, details: dict[int, dict]) -> PartitionTable:
    """Attach type GUIDs, labels and lsblk's filesystem names to the entries."""
    merged = []
    for entry in table.entries:
        child = details.get(entry.index, {})
        merged.append(
            PartitionEntry(
                index=entry.index,
                start_mb=entry.start_mb,
                end_mb=entry.end_mb,
                device_path=entry.device_path,
                type_guid=(child.get("parttype") or None),
                label=(child.get("label") or None),
                fstype=(child.get("fstype") or entry.fstype),
                name=entry.name,
            )
        )
    return PartitionTable(
        device=table.device,
        kind=table.kind,
        disk_end_mb=table.disk_end_mb,
        entries=tuple(merged),
        free_regions=table.free_regions,
    )


def read_partition_table(device: str) -> PartitionTable:
    """Read the partition table of ``device``.

    Raises:
        ExternalToolError: If parted or lsblk fail or produce unusable output
    """
    command = ["parted", "-s", "-m", device, "unit", "MB", "print", "free"]
    output = run_checked_command(command)
    try:
        table = parse_parted_machine_output(device, output)
    except ValueError as error:
        raise ExternalToolError(command, message=str(error)) from error
    try:
        details = _lsblk_partition_details(device)
    except json.JSONDecodeError as error:
        raise ExternalToolError(
            ["lsblk", device], message=f"lsblk returned invalid JSON: {error}"
        ) from error
    table = merge_partition_details(table, details)
    log.debug(
        f"Read {table.kind.value} table on {device}: "
        f"{len(table.entries)} partitions, disk end {table.disk_end_mb}MB"
    )
    return table
