"""Domain models for provisioning operations.

Type-safe objects describing targets, images, partition tables and
filesystem identities, shared by the storage and pipeline packages.
"""

from __future__ import annotations

from .models import (
    DeviceTarget,
    DiscoveredPartitions,
    FileTarget,
    FilesystemIdentity,
    FilesystemKind,
    FreeRegion,
    ImageSource,
    PartitionEntry,
    PartitionRole,
    PartitionTable,
    PipelineContext,
    ProvisioningTarget,
    ReferenceSite,
    ResizeResult,
    ResizeStage,
    TableKind,
    TargetKind,
    TargetRequest,
)


__all__ = [
    "DeviceTarget",
    "DiscoveredPartitions",
    "FileTarget",
    "FilesystemIdentity",
    "FilesystemKind",
    "FreeRegion",
    "ImageSource",
    "PartitionEntry",
    "PartitionRole",
    "PartitionTable",
    "PipelineContext",
    "ProvisioningTarget",
    "ReferenceSite",
    "ResizeResult",
    "ResizeStage",
    "TableKind",
    "TargetKind",
    "TargetRequest",
]
