"""Image source preparation.

Only raw images are written. Compressed downloads must be decompressed
first; the error names the file that decompression is expected to produce.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from fvf_burner.domain.models import ImageSource
from fvf_burner.logging import LoggerFactory
from fvf_burner.storage.exceptions import ImageSourceError

RAW_SUFFIXES = (".img", ".raw")
COMPRESSED_SUFFIXES = (".gz", ".zst")

log = LoggerFactory.for_system()


def expected_raw_path(archive: Path) -> Path:
    """Path of the raw image an archive decompresses to (foo.raw.zst -> foo.raw)."""
    return archive.with_suffix("")


def prepare_image_source(
    image: Union[str, Path],
    archive: Optional[Union[str, Path]] = None,
) -> ImageSource:
    """Validate a raw image path and wrap it as an ImageSource.

    Args:
        image: Path to the uncompressed image
        archive: Optional compressed file the image came from

    Raises:
        ImageSourceError: If the image is missing, empty, compressed or of an
            unknown format
    """
    path = Path(image).expanduser()
    suffix = path.suffix.lower()
    if suffix in COMPRESSED_SUFFIXES:
        raw = expected_raw_path(path)
        raise ImageSourceError(
            str(path),
            f"compressed images are not written directly; decompress to {raw} first",
        )
    if suffix not in RAW_SUFFIXES:
        raise ImageSourceError(str(path), f"unsupported image format {suffix or '(none)'}")
    if not path.is_file():
        raise ImageSourceError(str(path), "file does not exist")
    if path.stat().st_size == 0:
        raise ImageSourceError(str(path), "file is empty")
    archive_path = Path(archive).expanduser() if archive else None
    if archive_path is not None and not archive_path.is_file():
        log.warning(f"Archive {archive_path} not found; it will not be offered for cleanup")
        archive_path = None
    source = ImageSource(path=path, archive_path=archive_path)
    log.info(f"Using image {source.path} ({source.size_bytes} bytes)")
    return source
