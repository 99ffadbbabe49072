"""Post-run cleanup of downloaded and decompressed image files."""

from __future__ import annotations

from pathlib import Path

from fvf_burner.domain.models import ImageSource
from fvf_burner.logging import LoggerFactory

from .approval import Approver, Plan

log = LoggerFactory.for_system()


def _offer_removal(path: Path, key: str, description: str, approver: Approver) -> bool:
    if not path.is_file():
        return False
    plan = Plan(key=key, title=f"Remove {description} {path}?", commands=(("rm", str(path)),))
    if not approver.confirm(plan):
        log.info(f"Keeping {path}")
        return False
    path.unlink()
    log.info(f"Removed {path}")
    return True


def cleanup_image_files(image: ImageSource, approver: Approver) -> list[Path]:
    """Offer to remove the original archive and the raw image.

    Returns:
        The paths that were removed
    """
    removed = []
    if image.archive_path is not None and image.archive_path != image.path:
        if _offer_removal(image.archive_path, "cleanup.archive", "archive", approver):
            removed.append(image.archive_path)
    if _offer_removal(image.path, "cleanup.image", "image", approver):
        removed.append(image.path)
    return removed
