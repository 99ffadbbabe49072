"""Required-tool check run before the pipeline starts."""

from __future__ import annotations

import shutil
from typing import Callable, Optional, Sequence

from fvf_burner.logging import LoggerFactory
from fvf_burner.storage.exceptions import MissingToolError

REQUIRED_COMMANDS = (
    "dd",
    "wipefs",
    "parted",
    "partprobe",
    "sgdisk",
    "e2fsck",
    "resize2fs",
    "tune2fs",
    "blkid",
    "lsblk",
    "mlabel",
    "losetup",
    "mount",
    "umount",
    "sync",
)

# Package providing each command, by package manager
DNF_PACKAGES = {
    "dd": "coreutils",
    "sync": "coreutils",
    "wipefs": "util-linux",
    "blkid": "util-linux",
    "lsblk": "util-linux",
    "losetup": "util-linux",
    "mount": "util-linux",
    "umount": "util-linux",
    "parted": "parted",
    "partprobe": "parted",
    "sgdisk": "gdisk",
    "e2fsck": "e2fsprogs",
    "resize2fs": "e2fsprogs",
    "tune2fs": "e2fsprogs",
    "mlabel": "mtools",
}
APT_PACKAGES = {**DNF_PACKAGES, "mount": "mount", "umount": "mount"}

PACKAGE_MANAGERS = (("dnf", DNF_PACKAGES), ("apt", APT_PACKAGES))

log = LoggerFactory.for_system()


def find_missing_commands(
    commands: Sequence[str] = REQUIRED_COMMANDS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> list[str]:
    return [command for command in commands if which(command) is None]


def install_hint(
    missing: Sequence[str],
    which: Callable[[str], Optional[str]] = shutil.which,
) -> str:
    """Suggest an install command for the package manager found on this system."""
    available = [(name, packages) for name, packages in PACKAGE_MANAGERS if which(name)]
    candidates = available or list(PACKAGE_MANAGERS)
    hints = []
    for manager, packages in candidates:
        names = sorted({packages.get(command, command) for command in missing})
        hints.append(f"{manager} install {' '.join(names)}")
    return " or ".join(hints)


def check_required_tools(
    commands: Sequence[str] = REQUIRED_COMMANDS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> None:
    """Raise MissingToolError when any required command is not on PATH."""
    missing = find_missing_commands(commands, which)
    if missing:
        hint = install_hint(missing, which)
        log.error(f"Missing required commands: {', '.join(missing)}")
        raise MissingToolError(missing, hint=hint)
    log.debug("All required commands are available")
