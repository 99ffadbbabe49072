"""Loop device binding for file targets."""

from __future__ import annotations

from pathlib import Path

from fvf_burner.logging import LoggerFactory

from .commands import run_checked_command, run_command
from .exceptions import ExternalToolError

log = LoggerFactory.for_target()


def bind_loop_device(path: Path) -> str:
    """Attach ``path`` to a free loop device with partition scanning enabled.

    Returns:
        The loop device path, e.g. "/dev/loop3"
    """
    command = ["losetup", "-P", "-f", "--show", str(path)]
    loop_device = run_checked_command(command).strip()
    if not loop_device.startswith("/dev/"):
        raise ExternalToolError(command, message=f"losetup returned no device for {path}")
    log.info(f"Attached {path} to {loop_device}")
    return loop_device


def release_loop_device(loop_device: str) -> None:
    run_command(["losetup", "-d", loop_device])
    log.info(f"Detached {loop_device}")
