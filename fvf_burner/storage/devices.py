"""Block device queries using lsblk and blkid.

This module answers the questions the pipeline asks about a block device:
how big it is, which of its partitions are mounted, whether it backs the
running system, and what a partition's sub-device is called.

Device Detection:
    Uses lsblk with JSON output (-J -b) so sizes are bytes and the
    partition tree is nested under "children":
    - Device name and path
    - Size in bytes
    - Mountpoint (if any)
    - Filesystem type and label
    - Partition table type and partition type GUID
    - Vendor, model, transport and removable flag

System Disk Detection:
    A target is the system disk when either
    1. a node in its lsblk tree is mounted at a system path (/, /boot, ...), or
    2. it has the same base device as the source of the root mount in
       /proc/mounts, after stripping any partition-number suffix from both
       (sda2 -> sda, nvme0n1p2 -> nvme0n1, mmcblk0p2 -> mmcblk0).

Partition Naming:
    A partition sub-device gets a "p" infix when the parent name ends in a
    digit (nvme0n1 -> nvme0n1p1, loop0 -> loop0p1) and none otherwise
    (sda -> sda1).
"""

from __future__ import annotations

import json
import os
import re
from typing import Optional

from fvf_burner.logging import LoggerFactory

from .commands import run_checked_command, run_command
from .exceptions import ExternalToolError

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/efi", "/boot/firmware"}
LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,MOUNTPOINT,FSTYPE,LABEL,PTTYPE,PARTTYPE"
WHOLE_DISK_PATTERN = re.compile(r"^((?:nvme\d+n\d+)|(?:mmcblk\d+)|(?:loop\d+)|(?:nbd\d+)|(?:md\d+))(?:p\d+)?$")

log = LoggerFactory.for_target()


def resolve_device_node(device: str) -> str:
    """Convert a device name ("sdb") or path to a device node path."""
    device = device.strip()
    return device if device.startswith("/dev/") else f"/dev/{device}"


def partition_device_path(device: str, number: int) -> str:
    """Return the sub-device path of partition ``number`` on ``device``.

    /dev/sda + 1 -> /dev/sda1
    /dev/nvme0n1 + 1 -> /dev/nvme0n1p1
    /dev/loop0 + 2 -> /dev/loop0p2
    """
    if device and device[-1].isdigit():
        return f"{device}p{number}"
    return f"{device}{number}"


def get_partition_number(name: Optional[str]) -> Optional[int]:
    """Extract partition number from a partition name or path."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", os.path.basename(name))
    if not match:
        return None
    return int(match.group(1))


def strip_partition_suffix(name: str) -> str:
    """Return the whole-disk name for a device or partition name.

    Names that are already whole disks are returned unchanged, so the
    function is idempotent: sda2 -> sda, sda -> sda, nvme0n1p3 -> nvme0n1,
    nvme0n1 -> nvme0n1.
    """
    base = os.path.basename(name)
    match = WHOLE_DISK_PATTERN.match(base)
    if match:
        return match.group(1)
    stripped = base.rstrip("0123456789")
    return stripped if stripped else base


def _coerce_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_flag(value) -> bool:
    return value in (True, 1, "1", "true")


def get_block_device(path: str) -> dict:
    """Return the lsblk record (with nested children) for ``path``.

    Raises:
        ExternalToolError: If lsblk fails or returns no usable record
    """
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, path]
    output = run_checked_command(command)
    try:
        data = json.loads(output)
    except json.JSONDecodeError as error:
        raise ExternalToolError(command, message=f"lsblk returned invalid JSON: {error}") from error
    devices = data.get("blockdevices", [])
    if not devices:
        raise ExternalToolError(command, message=f"lsblk returned no device for {path}")
    return devices[0]


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def get_device_size(path: str) -> int:
    """Size of a block device in bytes."""
    size = _coerce_int(get_block_device(path).get("size"))
    if size is None:
        raise ExternalToolError(["lsblk", path], message=f"lsblk reported no size for {path}")
    return size


def read_mount_table(mounts_file: str = "/proc/mounts") -> list[tuple[str, str]]:
    """Return (source, mountpoint) pairs in mount order.

    Raises FileNotFoundError when ``mounts_file`` does not exist.
    """
    entries = []
    with open(mounts_file, "r", encoding="utf-8") as handle:
        for line in handle:
            parts = line.split()
            if len(parts) > 1:
                # Spaces in mountpoints are escaped as \040
                entries.append((parts[0], parts[1].replace("\\040", " ")))
    return entries


def _node_path(device: dict) -> str:
    return device.get("path") or resolve_device_node(device.get("name", ""))


def _lsblk_mountpoints(device: dict) -> list[str]:
    # MOUNTPOINTS (util-linux 2.37+) lists every mount; MOUNTPOINT only one
    values = list(device.get("mountpoints") or []) + [device.get("mountpoint")]
    return [value for value in values if value]


def collect_mountpoints(
    device: dict,
    mount_table: Optional[list[tuple[str, str]]] = None,
) -> list[tuple[str, str]]:
    """Return (node path, mountpoint) pairs for a device and all its partitions.

    Mountpoints come from lsblk and from the kernel mount table, so a node
    mounted in several places is reported once per mountpoint.
    """
    if mount_table is None:
        try:
            mount_table = read_mount_table()
        except FileNotFoundError:
            mount_table = []
    node = _node_path(device)
    found = _lsblk_mountpoints(device)
    for source, mountpoint in mount_table:
        if source.startswith("/dev/") and os.path.realpath(source) == node:
            found.append(mountpoint)

    mountpoints: list[tuple[str, str]] = []
    for mountpoint in found:
        if (node, mountpoint) not in mountpoints:
            mountpoints.append((node, mountpoint))
    for child in get_children(device):
        mountpoints.extend(collect_mountpoints(child, mount_table))
    return mountpoints


def has_root_mountpoint(device: dict) -> bool:
    if any(mountpoint in ROOT_MOUNTPOINTS for mountpoint in _lsblk_mountpoints(device)):
        return True
    return any(has_root_mountpoint(child) for child in get_children(device))


def find_root_source(mounts_file: str = "/proc/mounts") -> Optional[str]:
    """Return the device backing the root mount, with symlinks resolved."""
    try:
        mount_table = read_mount_table(mounts_file)
    except FileNotFoundError:
        return None
    source = None
    for entry_source, mountpoint in mount_table:
        # Later entries shadow earlier ones for the same mountpoint
        if mountpoint == "/":
            source = entry_source
    if source is None or not source.startswith("/dev/"):
        return source
    return os.path.realpath(source)


def is_system_disk(
    target_path: str,
    device: Optional[dict] = None,
    root_source: Optional[str] = None,
) -> bool:
    """Whether ``target_path`` is (or contains) the running system's disk."""
    if device is not None and has_root_mountpoint(device):
        return True
    if root_source is None:
        root_source = find_root_source()
    if not root_source or not root_source.startswith("/dev/"):
        return False
    target_base = strip_partition_suffix(os.path.realpath(target_path))
    root_base = strip_partition_suffix(root_source)
    log.debug(f"System disk check: target base {target_base}, root base {root_base}")
    return target_base == root_base


def list_candidate_disks() -> list[dict]:
    """List whole disks an image could be written to (loop and rom excluded)."""
    output = run_checked_command(
        ["lsblk", "-J", "-b", "-d", "-o", "NAME,PATH,SIZE,TYPE,RM,TRAN,MODEL,MOUNTPOINT"]
    )
    data = json.loads(output)
    disks = []
    for device in data.get("blockdevices", []):
        if device.get("type") in ("loop", "rom"):
            continue
        name = device.get("name") or ""
        if name.startswith(("loop", "sr", "zram")):
            continue
        disks.append(device)
    return disks


def format_device_summary(device: dict) -> str:
    """One-line human description of an lsblk disk record."""
    from .progress import human_size

    name = device.get("path") or resolve_device_node(device.get("name", ""))
    parts = [name, human_size(_coerce_int(device.get("size")))]
    vendor_model = " ".join(
        part.strip() for part in (device.get("vendor"), device.get("model")) if part
    )
    if vendor_model:
        parts.append(vendor_model)
    if device.get("tran"):
        parts.append(str(device["tran"]))
    if _coerce_flag(device.get("rm")):
        parts.append("removable")
    return " ".join(parts)


def describe_device(device: dict) -> list[str]:
    """Lines describing a device and its partitions for a confirmation prompt."""
    from .progress import human_size

    lines = [format_device_summary(device)]
    for child in get_children(device):
        node = child.get("path") or resolve_device_node(child.get("name", ""))
        detail = [f"  {node}", human_size(_coerce_int(child.get("size")))]
        if child.get("fstype"):
            detail.append(child["fstype"])
        if child.get("label"):
            detail.append(f"[{child['label']}]")
        if child.get("mountpoint"):
            detail.append(f"on {child['mountpoint']}")
        lines.append(" ".join(detail))
    return lines


def get_filesystem_uuid(partition: str) -> str:
    """Read a filesystem's identifier with blkid (empty string when absent)."""
    result = run_command(
        ["blkid", "-s", "UUID", "-o", "value", partition],
        ok_returncodes=(0, 2),
    )
    # blkid exits 2 when the requested tag is not present
    return result.stdout.strip()


def is_mountpoint_active(mountpoint: str) -> bool:
    try:
        mount_table = read_mount_table()
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return any(entry == mountpoint for _, entry in mount_table)


def unmount_mountpoint(mountpoint: str) -> None:
    """Unmount one mountpoint (raises ExternalToolError on failure)."""
    run_command(["umount", mountpoint])
    log.info(f"Unmounted {mountpoint}")


def sync_buffers() -> None:
    """Force buffered writes to stable storage."""
    run_command(["sync"])


def reread_partition_table(device: str) -> None:
    """Ask the kernel to re-read the partition table of ``device``."""
    run_command(["partprobe", device])
