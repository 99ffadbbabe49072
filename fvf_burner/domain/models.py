"""Domain model for provisioning operations.

Type-safe objects passed between pipeline stages instead of raw lsblk
dicts and parted output lines.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional, Union


# ==============================================================================
# Targets and sources
# ==============================================================================


class TargetKind(Enum):
    """What the operator asked to write to."""

    DEVICE = "device"
    FILE = "file"


@dataclass(frozen=True)
class TargetRequest:
    """Unvalidated operator input for the write target."""

    kind: TargetKind
    path: str  # device name ("sdb", "/dev/sdb") or file path


@dataclass(frozen=True)
class DeviceTarget:
    """A physical block device."""

    path: str  # e.g., "/dev/sdb"

    @property
    def block_device(self) -> str:
        return self.path

    @property
    def display_name(self) -> str:
        return self.path


@dataclass(frozen=True)
class FileTarget:
    """A regular file, bound to a loop device once written."""

    path: Path
    backing_loop: Optional[str] = None  # e.g., "/dev/loop3"

    @property
    def block_device(self) -> Optional[str]:
        return self.backing_loop

    @property
    def display_name(self) -> str:
        return str(self.path)

    def with_loop(self, loop_device: str) -> FileTarget:
        return replace(self, backing_loop=loop_device)


ProvisioningTarget = Union[DeviceTarget, FileTarget]


@dataclass(frozen=True)
class ImageSource:
    """A prepared, uncompressed raw image.

    archive_path is the compressed file it came from, kept only so the
    cleanup step can offer to remove it.
    """

    path: Path
    archive_path: Optional[Path] = None

    @property
    def size_bytes(self) -> int:
        return self.path.stat().st_size

    @property
    def name(self) -> str:
        return self.path.name


# ==============================================================================
# Partition tables
# ==============================================================================


class TableKind(Enum):
    """On-disk partition table format."""

    GPT = "gpt"
    MBR = "msdos"
    UNKNOWN = "unknown"

    @classmethod
    def from_label(cls, label: Optional[str]) -> TableKind:
        """Map a parted/lsblk table label ("gpt", "msdos", "dos") to a kind."""
        normalized = (label or "").strip().lower()
        if normalized == "gpt":
            return cls.GPT
        if normalized in ("msdos", "dos", "mbr"):
            return cls.MBR
        return cls.UNKNOWN


@dataclass(frozen=True)
class PartitionEntry:
    """One partition, offsets in MB (10^6 bytes) as reported by parted."""

    index: int
    start_mb: Decimal
    end_mb: Decimal
    device_path: str  # e.g., "/dev/sdb2", "/dev/loop0p2"
    type_guid: Optional[str] = None  # GPT only
    label: Optional[str] = None  # filesystem label
    fstype: Optional[str] = None
    name: Optional[str] = None  # GPT partition name

    @property
    def size_mb(self) -> Decimal:
        return self.end_mb - self.start_mb


@dataclass(frozen=True)
class FreeRegion:
    start_mb: Decimal
    end_mb: Decimal

    @property
    def size_mb(self) -> Decimal:
        return self.end_mb - self.start_mb


@dataclass(frozen=True)
class PartitionTable:
    """Partition entries ordered by index, plus the free space between them."""

    device: str
    kind: TableKind
    disk_end_mb: Decimal
    entries: tuple[PartitionEntry, ...] = ()
    free_regions: tuple[FreeRegion, ...] = ()

    def get(self, index: int) -> Optional[PartitionEntry]:
        for entry in self.entries:
            if entry.index == index:
                return entry
        return None

    def indices(self) -> list[int]:
        return [entry.index for entry in self.entries]

    def next_entry(self, index: int) -> Optional[PartitionEntry]:
        """Return the partition that starts closest after the given one ends."""
        current = self.get(index)
        if current is None:
            return None
        following = [
            entry
            for entry in self.entries
            if entry.index != index and entry.start_mb >= current.end_mb
        ]
        if not following:
            return None
        return min(following, key=lambda entry: entry.start_mb)

    def max_end_mb(self, index: int) -> Decimal:
        """Largest end offset the partition can grow to without overlapping."""
        following = self.next_entry(index)
        if following is None:
            return self.disk_end_mb
        return min(following.start_mb, self.disk_end_mb)


# ==============================================================================
# Filesystem identity
# ==============================================================================


class FilesystemKind(Enum):
    FAT32 = "fat32"
    EXT4 = "ext4"
    OTHER = "other"

    @classmethod
    def from_fstype(cls, fstype: Optional[str]) -> FilesystemKind:
        normalized = (fstype or "").strip().lower()
        if normalized in ("vfat", "fat32"):
            return cls.FAT32
        if normalized == "ext4":
            return cls.EXT4
        return cls.OTHER


class PartitionRole(Enum):
    BOOT = "boot"
    ROOT = "root"
    EFI = "efi"


@dataclass(frozen=True)
class FilesystemIdentity:
    """Current and replacement identifier of one discovered partition.

    FAT32 identifiers are generated as 8 hex digits ("1A2B3C4D") and appear
    in configuration files as "1A2B-3C4D"; EXT4 identifiers are canonical
    UUID strings in both places.
    """

    partition: PartitionEntry
    role: PartitionRole
    kind: FilesystemKind
    current_uuid: str
    new_uuid: Optional[str] = None

    @property
    def device_path(self) -> str:
        return self.partition.device_path

    def reference_form(self, value: str) -> str:
        """Render an identifier the way configuration files spell it."""
        if self.kind is FilesystemKind.FAT32:
            compact = value.replace("-", "")
            if len(compact) == 8:
                return f"{compact[:4]}-{compact[4:]}"
        return value

    @property
    def old_reference(self) -> str:
        return self.reference_form(self.current_uuid)

    @property
    def new_reference(self) -> str:
        if self.new_uuid is None:
            raise ValueError(f"No new identifier generated for {self.device_path}")
        return self.reference_form(self.new_uuid)


@dataclass(frozen=True)
class DiscoveredPartitions:
    """Partitions selected for identity regeneration."""

    boot: PartitionEntry
    root: PartitionEntry
    efi: Optional[PartitionEntry] = None

    def by_role(self) -> dict[PartitionRole, PartitionEntry]:
        roles = {PartitionRole.BOOT: self.boot, PartitionRole.ROOT: self.root}
        if self.efi is not None:
            roles[PartitionRole.EFI] = self.efi
        return roles


@dataclass
class ReferenceSite:
    """A configuration file that embeds filesystem identifiers."""

    name: str  # e.g., "fstab", "grub.cfg"
    path: Path
    original: str = ""
    updated: str = ""

    @property
    def changed(self) -> bool:
        return self.original != self.updated


# ==============================================================================
# Pipeline state
# ==============================================================================


class ResizeStage(Enum):
    """Progress of the partition resize controller."""

    IDLE = "idle"
    TABLE_READ = "table_read"
    SKIPPED = "skipped"
    NEW_END_COMPUTED = "new_end_computed"
    TABLE_RESIZED = "table_resized"
    FILESYSTEM_CHECKED = "filesystem_checked"
    FILESYSTEM_GROWN = "filesystem_grown"
    DONE = "done"


@dataclass(frozen=True)
class ResizeResult:
    stage: ResizeStage
    partition_index: Optional[int] = None
    partition_path: Optional[str] = None
    old_end_mb: Optional[Decimal] = None
    new_end_mb: Optional[Decimal] = None


@dataclass(frozen=True)
class PipelineContext:
    """State threaded through the pipeline; each stage returns an updated copy."""

    request: TargetRequest
    image: ImageSource
    target: Optional[ProvisioningTarget] = None
    resize: Optional[ResizeResult] = None
    identities: tuple[FilesystemIdentity, ...] = field(default_factory=tuple)

    @property
    def block_device(self) -> Optional[str]:
        if self.target is None:
            return None
        return self.target.block_device

    def require_block_device(self) -> str:
        device = self.block_device
        if not device:
            raise ValueError("Pipeline has no block device yet; run the write stage first")
        return device

    def evolve(self, **changes) -> PipelineContext:
        return replace(self, **changes)
