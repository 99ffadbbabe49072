"""Settings storage for provisioning configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "FVF_BURNER_SETTINGS_PATH",
        Path.home() / ".config" / "fvf-burner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_COPY_BLOCK_SIZE = "4M"
DEFAULT_RECOMMENDED_FREE_BYTES = 19327352832  # 18GiB

DEFAULT_SETTINGS: dict[str, Any] = {
    "copy_block_size": DEFAULT_COPY_BLOCK_SIZE,
    "mount_prefix": "fvf-burner-",
    "efi_grub_config": "EFI/fedora/grub.cfg",
    "extlinux_config": "extlinux/extlinux.conf",
    "loader_entries_dir": "loader/entries",
    "fstab_path": "etc/fstab",
    "recommended_free_bytes": DEFAULT_RECOMMENDED_FREE_BYTES,
    "progress_log_interval_seconds": 5.0,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    if default is None:
        default = DEFAULT_SETTINGS.get(key)
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def override_setting(key: str, value: Any) -> None:
    """Set a value for this process only, without writing the settings file."""
    settings_store.values[key] = value


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


load_settings()
