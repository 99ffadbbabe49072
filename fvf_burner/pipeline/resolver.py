"""Target resolution and safety guard.

Turns operator input into a validated :class:`ProvisioningTarget`:

Device targets:
    - must exist and be a block device
    - must not be the disk backing the running root filesystem
    - are described (size, model, partitions) and explicitly confirmed
    - have every mounted partition unmounted with the operator's consent

File targets:
    - are used at their current size if they exist
    - otherwise are created after confirmation, zero-filled to an
      operator-chosen size, with a free-space check on the destination
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from fvf_burner.config import settings
from fvf_burner.domain.models import (
    DeviceTarget,
    FileTarget,
    ProvisioningTarget,
    TargetKind,
    TargetRequest,
)
from fvf_burner.logging import LoggerFactory
from fvf_burner.storage import devices
from fvf_burner.storage.commands import run_checked_with_streaming_progress
from fvf_burner.storage.exceptions import (
    ExternalToolError,
    OperationCancelled,
    TargetBusyError,
    UnsafeTargetError,
)
from fvf_burner.storage.progress import human_size
from fvf_burner.storage.validation import (
    check_capacity,
    validate_block_device,
    validate_not_system_disk,
)

from .approval import Approver, Plan

MIB = 1024 * 1024

log = LoggerFactory.for_target()


def select_device(approver: Approver) -> str:
    """Show the candidate disks and ask which one to write to."""
    candidates = devices.list_candidate_disks()
    if candidates:
        approver.inform("Available disks:")
        for disk in candidates:
            approver.inform(f"  {devices.format_device_summary(disk)}")
    else:
        approver.inform("No removable or fixed disks found besides loop devices.")

    def parse(value: str) -> str:
        if not value.strip():
            raise ValueError("a device name is required")
        return devices.resolve_device_node(value)

    return approver.ask("target.device", "Device to write to (e.g. sdb)", parse)


def release_mountpoints(target: str, device: dict, approver: Approver) -> None:
    """Unmount every mounted node of ``device`` with the operator's consent.

    Raises:
        TargetBusyError: If an unmount is declined or fails
    """
    for node, mountpoint in devices.collect_mountpoints(device):
        plan = Plan(
            key="target.unmount",
            title=f"{node} is mounted at {mountpoint}",
            commands=(("umount", mountpoint),),
        )
        if not approver.confirm(plan):
            raise TargetBusyError(target, mountpoint, "unmount declined")
        try:
            devices.unmount_mountpoint(mountpoint)
        except ExternalToolError as error:
            raise TargetBusyError(target, mountpoint, str(error)) from error
        if devices.is_mountpoint_active(mountpoint):
            raise TargetBusyError(target, mountpoint, "still mounted after umount")


def resolve_device_target(
    name: str,
    approver: Approver,
    root_source: Optional[str] = None,
) -> DeviceTarget:
    """Validate a device name or path and return it as a DeviceTarget.

    Raises:
        UnsafeTargetError: If the device is missing, not a block device, or
            the system disk
        OperationCancelled: If the operator does not confirm the target
        TargetBusyError: If a mounted partition cannot be unmounted
    """
    path = devices.resolve_device_node(name)
    validate_block_device(path)
    record = devices.get_block_device(path)
    validate_not_system_disk(path, device=record, root_source=root_source)

    size_bytes = devices.get_device_size(path)
    plan = Plan(
        key="target.confirm",
        title=f"ALL DATA ON {path} ({human_size(size_bytes)}) WILL BE DESTROYED",
        details=tuple(devices.describe_device(record)),
    )
    if not approver.confirm(plan):
        raise OperationCancelled(plan.key)

    release_mountpoints(path, record, approver)
    log.info(f"Resolved device target {path} ({size_bytes} bytes)")
    return DeviceTarget(path=path)


def _parse_size_mb(value: str) -> int:
    text = value.strip()
    if not text.isdigit() or int(text) <= 0:
        raise ValueError(f"size must be a positive whole number of MB, got {value!r}")
    return int(text)


def create_target_file(path: Path, size_mb: int) -> None:
    """Zero-fill a new file of ``size_mb`` MiB."""
    run_checked_with_streaming_progress(
        ["dd", "if=/dev/zero", f"of={path}", "bs=1M", f"count={size_mb}", "status=progress"],
        total_bytes=size_mb * MIB,
        title="CREATING",
    )
    log.info(f"Created {path} ({size_mb} MiB)")


def resolve_file_target(name: str, approver: Approver) -> FileTarget:
    """Return a FileTarget, creating and zero-filling the file if needed.

    Raises:
        UnsafeTargetError: If the path is not a regular file or its directory
            does not exist
        OperationCancelled: If file creation is declined
        CapacityWarning: If the requested size exceeds free space and the
            override is declined
    """
    path = Path(name).expanduser()
    if path.exists():
        if not path.is_file():
            raise UnsafeTargetError(str(path), "not a regular file")
        log.info(f"Using existing file {path} ({path.stat().st_size} bytes)")
        return FileTarget(path=path)

    parent = path.parent
    if not parent.is_dir():
        raise UnsafeTargetError(str(path), f"directory {parent} does not exist")

    plan = Plan(
        key="target.create",
        title=f"{path} does not exist; create it?",
        details=(f"The file will be zero-filled in {parent}",),
    )
    if not approver.confirm(plan):
        raise OperationCancelled(plan.key)

    recommended_mb = settings.get_int("recommended_free_bytes") // MIB
    size_mb = approver.ask(
        "target.file_size",
        f"Size of {path.name} in MB (recommended at least {recommended_mb})",
        _parse_size_mb,
    )
    free_bytes = shutil.disk_usage(parent).free
    warning = check_capacity(f"file {path.name}", size_mb * MIB, f"free space in {parent}", free_bytes)
    if warning is not None and not approver.override(warning):
        raise warning

    create_target_file(path, size_mb)
    return FileTarget(path=path)


def resolve_target(
    request: TargetRequest,
    approver: Approver,
    root_source: Optional[str] = None,
) -> ProvisioningTarget:
    """Resolve a TargetRequest into a validated ProvisioningTarget."""
    if request.kind is TargetKind.FILE:
        return resolve_file_target(request.path, approver)
    name = request.path or select_device(approver)
    return resolve_device_target(name, approver, root_source=root_source)
