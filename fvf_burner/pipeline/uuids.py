"""Filesystem identity regeneration.

Every unit flashed from the same image starts with the same filesystem
UUIDs. This module gives the boot, root and (optional) EFI filesystems fresh
identifiers and keeps the boot loader and mount table pointing at them.

Discovery:
    GPT tables are searched by partition type GUID, MBR tables by label
    substring ("boot", "root"). When several partitions match a role the
    last one wins. Boot and root are mandatory; a missing role raises
    PartitionNotFoundError before anything is mounted.

Identifiers:
    FAT32: 8 random uppercase hex digits ("1A2B3C4D"), written to files as
           "1A2B-3C4D" and passed to ``mlabel -N`` without the hyphen
    EXT4:  a random canonical UUID, set with ``tune2fs -U``

Order of operations:
    1. Generate every new identifier (no mounts yet)
    2. Mount boot, root and EFI on private temporary directories
    3. Stage all reference-site rewrites in memory, check the files are
       writable, then write them as a batch (restoring on failure)
    4. Unmount EFI and relabel it
    5. Unmount boot and root
    6. Commit the boot superblock, then the root superblock
"""

from __future__ import annotations

import os
import re
import secrets
import uuid
from contextlib import ExitStack
from pathlib import Path
from typing import Iterable, Optional, Sequence

from fvf_burner.config import settings
from fvf_burner.domain.models import (
    DiscoveredPartitions,
    FilesystemIdentity,
    FilesystemKind,
    PartitionEntry,
    PartitionRole,
    PartitionTable,
    PipelineContext,
    ReferenceSite,
    TableKind,
)
from fvf_burner.logging import LoggerFactory
from fvf_burner.storage.commands import run_command
from fvf_burner.storage.devices import get_filesystem_uuid
from fvf_burner.storage.exceptions import (
    ExternalToolError,
    OperationCancelled,
    PartitionNotFoundError,
    ReferenceRewriteError,
    UnsupportedFilesystemError,
)
from fvf_burner.storage.mount import temporary_mount
from fvf_burner.storage.partition_table import read_partition_table

from .approval import Approver, Plan

ROOT_TYPE_GUID = "0fc63daf-8483-4772-8e79-3d69d8477de4"
BOOT_TYPE_GUID = "bc13c2ff-59e6-4262-a352-b275fd6f7172"
EFI_TYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"

TEXT_ENCODING = "utf-8"
TEXT_ERRORS = "surrogateescape"

log = LoggerFactory.for_uuid()


# ==============================================================================
# Discovery
# ==============================================================================


class PartitionDiscoverer:
    """Selects the boot, root and EFI partitions of one table kind."""

    table_kind = TableKind.UNKNOWN

    def roles_for(self, entry: PartitionEntry) -> Iterable[PartitionRole]:
        raise NotImplementedError

    def discover(self, table: PartitionTable) -> DiscoveredPartitions:
        found: dict[PartitionRole, PartitionEntry] = {}
        for entry in table.entries:
            for role in self.roles_for(entry):
                found[role] = entry
        for role in (PartitionRole.BOOT, PartitionRole.ROOT):
            if role not in found:
                raise PartitionNotFoundError(table.device, role.value, self.table_kind.value)
        boot, root = found[PartitionRole.BOOT], found[PartitionRole.ROOT]
        if boot.index == root.index:
            raise PartitionNotFoundError(
                table.device, "boot (distinct from root)", self.table_kind.value
            )
        discovered = DiscoveredPartitions(boot=boot, root=root, efi=found.get(PartitionRole.EFI))
        log.info(
            f"Discovered on {table.device}: "
            + ", ".join(f"{role.value}={entry.device_path}" for role, entry in discovered.by_role().items())
        )
        return discovered


class GptDiscoverer(PartitionDiscoverer):
    """Matches partition type GUIDs."""

    table_kind = TableKind.GPT
    ROLE_GUIDS = {
        BOOT_TYPE_GUID: PartitionRole.BOOT,
        ROOT_TYPE_GUID: PartitionRole.ROOT,
        EFI_TYPE_GUID: PartitionRole.EFI,
    }

    def roles_for(self, entry: PartitionEntry) -> Iterable[PartitionRole]:
        role = self.ROLE_GUIDS.get((entry.type_guid or "").strip().lower())
        return (role,) if role else ()


class MbrDiscoverer(PartitionDiscoverer):
    """Matches filesystem labels by substring. Best effort; never guesses."""

    table_kind = TableKind.MBR
    LABEL_PATTERNS = (("boot", PartitionRole.BOOT), ("root", PartitionRole.ROOT))

    def roles_for(self, entry: PartitionEntry) -> Iterable[PartitionRole]:
        label = (entry.label or "").lower()
        if not label:
            return ()
        return tuple(role for pattern, role in self.LABEL_PATTERNS if pattern in label)


DISCOVERERS = {
    TableKind.GPT: GptDiscoverer,
    TableKind.MBR: MbrDiscoverer,
}


def discover_partitions(table: PartitionTable) -> DiscoveredPartitions:
    discoverer_cls = DISCOVERERS.get(table.kind)
    if discoverer_cls is None:
        raise PartitionNotFoundError(table.device, "boot", "unrecognized")
    return discoverer_cls().discover(table)


# ==============================================================================
# Identifiers
# ==============================================================================


def _compact(value: str) -> str:
    return value.replace("-", "").upper()


def generate_identifier(kind: FilesystemKind, current: str = "") -> str:
    """Generate a fresh identifier for a filesystem of ``kind``.

    Raises:
        UnsupportedFilesystemError: For kinds other than FAT32 and EXT4
    """
    while True:
        if kind is FilesystemKind.FAT32:
            candidate = secrets.token_hex(4).upper()
        elif kind is FilesystemKind.EXT4:
            candidate = str(uuid.uuid4())
        else:
            raise UnsupportedFilesystemError("", kind.value, "generate an identifier")
        if _compact(candidate) != _compact(current):
            return candidate


def read_identities(discovered: DiscoveredPartitions) -> list[FilesystemIdentity]:
    """Read the current identifier of every discovered partition.

    Raises:
        UnsupportedFilesystemError: If a filesystem is neither FAT32 nor EXT4
        ExternalToolError: If blkid reports no identifier
    """
    identities = []
    for role, entry in discovered.by_role().items():
        kind = FilesystemKind.from_fstype(entry.fstype)
        if kind is FilesystemKind.OTHER:
            raise UnsupportedFilesystemError(entry.device_path, entry.fstype, "regenerate its UUID")
        current = get_filesystem_uuid(entry.device_path)
        if not current:
            raise ExternalToolError(
                ["blkid", "-s", "UUID", "-o", "value", entry.device_path],
                message=f"blkid reported no UUID for {entry.device_path}",
            )
        identities.append(
            FilesystemIdentity(partition=entry, role=role, kind=kind, current_uuid=current)
        )
    return identities


def assign_new_identifiers(identities: Sequence[FilesystemIdentity]) -> list[FilesystemIdentity]:
    assigned = []
    for identity in identities:
        new_uuid = generate_identifier(identity.kind, identity.current_uuid)
        assigned.append(
            FilesystemIdentity(
                partition=identity.partition,
                role=identity.role,
                kind=identity.kind,
                current_uuid=identity.current_uuid,
                new_uuid=new_uuid,
            )
        )
        log.info(f"{identity.role.value} {identity.device_path}: {identity.old_reference} -> {assigned[-1].new_reference}")
    return assigned


# ==============================================================================
# Reference sites
# ==============================================================================


def find_loader_entry(search_dirs: Iterable[Path]) -> Optional[Path]:
    """Return the first *.conf boot loader entry in the first directory that has one."""
    for directory in search_dirs:
        if not directory.is_dir():
            continue
        entries = sorted(path for path in directory.glob("*.conf") if path.is_file())
        if entries:
            return entries[0]
    return None


def locate_reference_sites(
    boot_dir: Path,
    root_dir: Path,
    efi_dir: Optional[Path] = None,
) -> list[ReferenceSite]:
    """List the configuration files to rewrite, in rewrite order."""
    candidates: list[tuple[str, Optional[Path]]] = []
    if efi_dir is not None:
        candidates.append(("grub.cfg", efi_dir / settings.get_setting("efi_grub_config")))
    candidates.append(("extlinux.conf", boot_dir / settings.get_setting("extlinux_config")))
    entries_dir = settings.get_setting("loader_entries_dir")
    candidates.append(
        (
            "loader entry",
            find_loader_entry(
                (boot_dir / entries_dir, root_dir / "boot" / entries_dir, root_dir / entries_dir)
            ),
        )
    )
    candidates.append(("fstab", root_dir / settings.get_setting("fstab_path")))

    sites = []
    for name, path in candidates:
        if path is None or not path.is_file():
            log.debug(f"No {name} found; skipping")
            continue
        sites.append(ReferenceSite(name=name, path=path))
    return sites


def replace_references(text: str, replacements: dict[str, str]) -> str:
    """Replace every old reference with its new one in a single pass."""
    if not replacements:
        return text
    pattern = re.compile(
        "|".join(re.escape(old) for old in sorted(replacements, key=len, reverse=True))
    )
    return pattern.sub(lambda match: replacements[match.group(0)], text)


def stage_rewrites(
    sites: Sequence[ReferenceSite],
    identities: Sequence[FilesystemIdentity],
) -> list[ReferenceSite]:
    """Read every site and compute its rewritten content without writing."""
    replacements = {identity.old_reference: identity.new_reference for identity in identities}
    staged = []
    for site in sites:
        try:
            original = site.path.read_text(encoding=TEXT_ENCODING, errors=TEXT_ERRORS)
        except OSError as error:
            raise ReferenceRewriteError(str(site.path), f"cannot read: {error}") from error
        staged.append(
            ReferenceSite(
                name=site.name,
                path=site.path,
                original=original,
                updated=replace_references(original, replacements),
            )
        )
    return staged


def _write(site: ReferenceSite, content: str) -> None:
    site.path.write_text(content, encoding=TEXT_ENCODING, errors=TEXT_ERRORS)


def commit_rewrites(staged: Sequence[ReferenceSite]) -> list[ReferenceSite]:
    """Write every changed site; on failure restore the ones already written.

    Raises:
        ReferenceRewriteError: If a site is not writable or a write fails
    """
    changed = [site for site in staged if site.changed]
    for site in changed:
        if not os.access(site.path, os.W_OK):
            raise ReferenceRewriteError(str(site.path), "file is not writable")

    written: list[ReferenceSite] = []
    for site in changed:
        try:
            _write(site, site.updated)
        except OSError as error:
            restored = []
            for done in reversed(written):
                try:
                    _write(done, done.original)
                    restored.append(str(done.path))
                except OSError as restore_error:
                    log.error(f"Could not restore {done.path}: {restore_error}")
            raise ReferenceRewriteError(str(site.path), str(error), restored) from error
        written.append(site)
        log.info(f"Updated {site.name} ({site.path})")
    return written


# ==============================================================================
# Superblocks
# ==============================================================================


def superblock_command(identity: FilesystemIdentity) -> list[str]:
    if identity.kind is FilesystemKind.FAT32:
        return ["mlabel", "-i", identity.device_path, "-N", _compact(identity.new_uuid)]
    if identity.kind is FilesystemKind.EXT4:
        return ["tune2fs", "-U", identity.new_uuid, identity.device_path]
    raise UnsupportedFilesystemError(identity.device_path, identity.kind.value, "set its UUID")


def commit_superblock(identity: FilesystemIdentity) -> None:
    run_command(superblock_command(identity))
    log.info(f"Set {identity.role.value} UUID on {identity.device_path} to {identity.new_reference}")


# ==============================================================================
# Engine
# ==============================================================================


def _by_role(identities: Sequence[FilesystemIdentity]) -> dict[PartitionRole, FilesystemIdentity]:
    return {identity.role: identity for identity in identities}


def regenerate_uuids(context: PipelineContext, approver: Approver) -> PipelineContext:
    """Give the boot, root and EFI filesystems of the target new identifiers.

    Returns:
        Context carrying the committed identities

    Raises:
        OperationCancelled: If the operator declines the change
    """
    device = context.require_block_device()
    table = read_partition_table(device)
    discovered = discover_partitions(table)
    identities = assign_new_identifiers(read_identities(discovered))
    roles = _by_role(identities)
    boot, root, efi = roles[PartitionRole.BOOT], roles[PartitionRole.ROOT], roles.get(PartitionRole.EFI)

    plan = Plan(
        key="uuid.apply",
        title=f"Regenerate filesystem UUIDs on {device}",
        details=tuple(
            f"{identity.role.value} {identity.device_path}: {identity.old_reference} -> {identity.new_reference}"
            for identity in identities
        ),
        commands=tuple(tuple(superblock_command(identity)) for identity in (efi, boot, root) if identity),
    )
    if not approver.confirm(plan):
        log.warning(f"UUID regeneration on {device} declined; identifiers left unchanged")
        raise OperationCancelled(plan.key)

    with ExitStack() as mounts:
        boot_dir = mounts.enter_context(temporary_mount(boot.device_path))
        root_dir = mounts.enter_context(temporary_mount(root.device_path))
        efi_mount = mounts.enter_context(ExitStack())
        efi_dir = efi_mount.enter_context(temporary_mount(efi.device_path)) if efi else None

        sites = locate_reference_sites(boot_dir, root_dir, efi_dir)
        commit_rewrites(stage_rewrites(sites, identities))

        if efi is not None:
            efi_mount.close()
            commit_superblock(efi)

    commit_superblock(boot)
    commit_superblock(root)
    log.info(f"UUID regeneration on {device} complete")
    return context.evolve(identities=tuple(identities))
