"""Write orchestrator: erase the target and copy the image onto it."""

from __future__ import annotations

from contextlib import ExitStack
from typing import Optional

from fvf_burner.config import settings
from fvf_burner.domain.models import DeviceTarget, FileTarget, ImageSource, PipelineContext, ProvisioningTarget
from fvf_burner.logging import LoggerFactory, ThrottledLogger
from fvf_burner.storage import devices
from fvf_burner.storage.commands import ProgressCallback, run_checked_with_streaming_progress, run_command
from fvf_burner.storage.exceptions import ExternalToolError, OperationCancelled
from fvf_burner.storage.loop import bind_loop_device, release_loop_device
from fvf_burner.storage.validation import check_capacity

from .approval import Approver, Plan

log = LoggerFactory.for_write()


def target_size_bytes(target: ProvisioningTarget) -> int:
    if isinstance(target, FileTarget):
        return target.path.stat().st_size
    return devices.get_device_size(target.path)


def _raw_path(target: ProvisioningTarget) -> str:
    if isinstance(target, FileTarget):
        return str(target.path)
    return target.path


def build_copy_command(image: ImageSource, target: ProvisioningTarget) -> list[str]:
    """dd command line for copying ``image`` onto ``target``.

    File targets keep their length (conv=notrunc) so that space beyond the
    image can be reclaimed by the resize step.
    """
    block_size = settings.get_setting("copy_block_size")
    conv = "fsync,notrunc" if isinstance(target, FileTarget) else "fsync"
    return [
        "dd",
        f"if={image.path}",
        f"of={_raw_path(target)}",
        f"bs={block_size}",
        "status=progress",
        f"conv={conv}",
    ]


def wipe_signatures(path: str, approver: Approver) -> None:
    """Clear filesystem and partition-table signatures on ``path``.

    When the plain wipe fails, the forced variant is attempted once, and only
    if the operator approves it.

    Raises:
        ExternalToolError: If the wipe fails and no forced retry is approved,
            or the forced retry fails too
    """
    try:
        run_command(["wipefs", "-a", path])
        return
    except ExternalToolError as error:
        log.warning(f"wipefs failed on {path}: {error}")
        plan = Plan(
            key="write.force_wipe",
            title=f"Signature wipe of {path} failed; retry with force?",
            commands=(("wipefs", "-a", "-f", path),),
            details=(str(error),),
            forced=True,
        )
        if not approver.confirm(plan):
            raise
    run_command(["wipefs", "-a", "-f", path])
    log.info(f"Forced signature wipe of {path} succeeded")


def _release_loop(loop_device: str) -> None:
    try:
        release_loop_device(loop_device)
    except ExternalToolError as error:
        log.error(f"Could not release {loop_device}: {error}")


def _default_progress_callback() -> ProgressCallback:
    throttled = ThrottledLogger(log, settings.get_setting("progress_log_interval_seconds"))

    def report(line: str, ratio: Optional[float]) -> None:
        throttled.info("copy", line)

    return report


def write_image(
    context: PipelineContext,
    approver: Approver,
    resources: ExitStack,
    progress_callback: Optional[ProgressCallback] = None,
) -> PipelineContext:
    """Erase the target, copy the image and expose the result as a block device.

    For file targets the written file is bound to a loop device whose release
    is registered on ``resources`` immediately.

    Returns:
        Context whose target has a usable ``block_device``
    """
    target = context.target
    if target is None:
        raise ValueError("Write stage needs a resolved target")
    image = context.image
    path = _raw_path(target)

    warning = check_capacity(
        f"image {image.name}",
        image.size_bytes,
        f"target {target.display_name}",
        target_size_bytes(target),
    )
    if warning is not None and not approver.override(warning):
        raise warning

    copy_command = build_copy_command(image, target)
    plan = Plan(
        key="write.erase",
        title=f"Write {image.name} to {target.display_name}",
        commands=(("wipefs", "-a", path), tuple(copy_command), ("sync",)),
        details=(f"Image size: {image.size_bytes} bytes",),
    )
    if not approver.confirm(plan):
        raise OperationCancelled(plan.key)

    wipe_signatures(path, approver)
    log.info(f"Writing {image.path} to {path}")
    run_checked_with_streaming_progress(
        copy_command,
        total_bytes=image.size_bytes,
        title="WRITING",
        progress_callback=progress_callback or _default_progress_callback(),
    )
    devices.sync_buffers()
    log.info(f"Image written to {path}")

    if isinstance(target, DeviceTarget):
        devices.reread_partition_table(target.path)
        return context.evolve(target=target)

    loop_device = bind_loop_device(target.path)
    resources.callback(_release_loop, loop_device)
    return context.evolve(target=target.with_loop(loop_device))
