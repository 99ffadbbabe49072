"""Custom exceptions for provisioning operations.

This module defines the error taxonomy of the provisioning pipeline. Every
fatal condition maps to exactly one class so the entry point can report the
failing step and exit non-zero.

Exception Hierarchy:
    ProvisioningError (base)
        ├── UnsafeTargetError
        ├── TargetBusyError
        ├── CapacityWarning
        ├── ExternalToolError
        │   └── MissingToolError
        ├── PartitionNotFoundError
        ├── FilesystemInconsistentError
        ├── UnsupportedFilesystemError
        ├── ReferenceRewriteError
        ├── ImageSourceError
        └── OperationCancelled

Usage:
    from fvf_burner.storage.exceptions import UnsafeTargetError

    if is_system_disk(target_path):
        raise UnsafeTargetError(target_path, "target is the system disk")
"""

from __future__ import annotations

from typing import Optional, Sequence


class ProvisioningError(Exception):
    """Base exception for all provisioning operations.

    ``step`` names the pipeline step that was running when the error was
    raised; it is filled in by the stage that catches and re-raises it.
    """

    step: Optional[str] = None


class UnsafeTargetError(ProvisioningError):
    """Target is the system disk, invalid, or otherwise refused."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Refusing to use {target}: {reason}")


class TargetBusyError(ProvisioningError):
    """A partition of the target stays mounted."""

    def __init__(self, target: str, mountpoint: str, reason: str = ""):
        self.target = target
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"{target} is still mounted at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CapacityWarning(ProvisioningError):
    """Something does not fit where it is going.

    Recoverable: the operator may override it. It is raised only when the
    override is declined.
    """

    def __init__(
        self,
        subject: str,
        required_bytes: int,
        container: str,
        available_bytes: int,
    ):
        self.subject = subject
        self.required_bytes = required_bytes
        self.container = container
        self.available_bytes = available_bytes
        super().__init__(
            f"{subject} ({required_bytes} bytes) is larger than "
            f"{container} ({available_bytes} bytes)"
        )


class ExternalToolError(ProvisioningError):
    """An invoked system utility failed."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        message: Optional[str] = None,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            detail = stderr.strip() or f"exit status {returncode}"
            message = f"Command failed ({' '.join(self.command)}): {detail}"
        super().__init__(message)


class MissingToolError(ExternalToolError):
    """Required utilities are not installed."""

    def __init__(self, tools: Sequence[str], hint: str = ""):
        self.tools = list(tools)
        self.hint = hint
        message = f"Missing required commands: {', '.join(self.tools)}"
        if hint:
            message += f" ({hint})"
        super().__init__(self.tools[:1], message=message)


class PartitionNotFoundError(ProvisioningError):
    """A mandatory partition role could not be discovered."""

    def __init__(self, device: str, role: str, table_kind: str = ""):
        self.device = device
        self.role = role
        self.table_kind = table_kind
        msg = f"No {role} partition found on {device}"
        if table_kind:
            msg += f" ({table_kind} table)"
        super().__init__(msg)


class FilesystemInconsistentError(ProvisioningError):
    """The pre-grow filesystem check reported uncorrected errors."""

    def __init__(self, partition: str, returncode: int, output: str = ""):
        self.partition = partition
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Filesystem check failed on {partition} (exit status {returncode})"
        )


class UnsupportedFilesystemError(ProvisioningError):
    """Filesystem kind is outside what the operation supports."""

    def __init__(self, partition: str, fstype: Optional[str], operation: str = ""):
        self.partition = partition
        self.fstype = fstype
        self.operation = operation
        msg = f"Unsupported filesystem type on {partition}: {fstype or 'unknown'}"
        if operation:
            msg += f" (cannot {operation})"
        super().__init__(msg)


class ReferenceRewriteError(ProvisioningError):
    """A staged configuration rewrite could not be committed.

    Files written before the failure have been restored to their staged
    originals.
    """

    def __init__(self, path: str, reason: str, restored: Sequence[str] = ()):
        self.path = path
        self.reason = reason
        self.restored = list(restored)
        super().__init__(f"Failed to rewrite {path}: {reason}")


class ImageSourceError(ProvisioningError):
    """Source image is missing or in an unsupported format."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Image {path}: {reason}")


class OperationCancelled(ProvisioningError):
    """The operator declined a confirmation gate."""

    def __init__(self, gate: str):
        self.gate = gate
        super().__init__(f"Operation cancelled: {gate}")
