"""Validation helpers for targets, sizes and operator input.

Raise-style validators used by the pipeline stages before any destructive
command runs.

Example:
    >>> from fvf_burner.storage.validation import validate_block_device
    >>> validate_block_device("/dev/sdb")  # raises UnsafeTargetError if not a block device
"""

from __future__ import annotations

import os
import stat
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from fvf_burner.logging import LoggerFactory

from .devices import is_system_disk
from .exceptions import CapacityWarning, UnsafeTargetError

log = LoggerFactory.for_target()


def validate_block_device(path: str) -> None:
    """Validate that ``path`` exists and is a block special file.

    Raises:
        UnsafeTargetError: If the path does not exist or is not a block device
    """
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError as error:
        raise UnsafeTargetError(path, "device does not exist") from error
    except OSError as error:
        raise UnsafeTargetError(path, f"cannot stat device: {error}") from error
    if not stat.S_ISBLK(mode):
        raise UnsafeTargetError(path, "not a block device")


def validate_not_system_disk(
    path: str,
    device: Optional[dict] = None,
    root_source: Optional[str] = None,
) -> None:
    """Validate that ``path`` is not the disk the running system lives on.

    Raises:
        UnsafeTargetError: If the target is the system disk
    """
    if is_system_disk(path, device=device, root_source=root_source):
        log.warning(f"Refusing system disk {path}")
        raise UnsafeTargetError(path, "target is the system disk")


def validate_custom_end(
    value: Union[str, int, Decimal],
    current_end_mb: Decimal,
    max_end_mb: Decimal,
) -> Decimal:
    """Parse and check an operator-entered partition end offset in MB.

    The value must be a whole number of MB strictly greater than the current
    end and no greater than ``max_end_mb``.

    Raises:
        ValueError: If the value is not an integer or out of range
    """
    text = str(value).strip()
    if text.upper().endswith("MB"):
        text = text[:-2].strip()
    if not text.isdigit():
        raise ValueError(f"End offset must be a whole number of MB, got {value!r}")
    try:
        end = Decimal(int(text))
    except (InvalidOperation, ValueError) as error:
        raise ValueError(f"Invalid end offset {value!r}") from error
    if end <= current_end_mb:
        raise ValueError(
            f"End offset {end}MB must be greater than the current end {current_end_mb}MB"
        )
    if end > max_end_mb:
        raise ValueError(f"End offset {end}MB exceeds the available end {max_end_mb}MB")
    return end


def check_capacity(
    subject: str,
    required_bytes: int,
    container: str,
    available_bytes: int,
) -> Optional[CapacityWarning]:
    """Return a CapacityWarning when ``required_bytes`` does not fit, else None."""
    if required_bytes > available_bytes:
        return CapacityWarning(subject, required_bytes, container, available_bytes)
    return None
