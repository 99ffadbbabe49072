"""Temporary mounts for editing configuration files on the target."""

from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from fvf_burner.config import settings
from fvf_burner.logging import LoggerFactory

from .commands import run_command

log = LoggerFactory.for_uuid()


def _mount_prefix() -> str:
    return str(settings.get_setting("mount_prefix", "fvf-burner-"))


@contextmanager
def temporary_mount(device: str, prefix: Optional[str] = None) -> Iterator[Path]:
    """Mount ``device`` on a fresh temporary directory for the ``with`` body.

    The filesystem is unmounted and the directory removed on exit, whether
    the body succeeded or raised.
    """
    mount_dir = Path(tempfile.mkdtemp(prefix=prefix or _mount_prefix()))
    try:
        run_command(["mount", device, str(mount_dir)])
    except Exception:
        os.rmdir(mount_dir)
        raise
    log.debug(f"Mounted {device} at {mount_dir}")
    try:
        yield mount_dir
    finally:
        try:
            run_command(["umount", str(mount_dir)])
            log.debug(f"Unmounted {device} from {mount_dir}")
        finally:
            try:
                os.rmdir(mount_dir)
            except OSError as error:
                log.warning(f"Could not remove mount directory {mount_dir}: {error}")
