"""Settings storage for build configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rawdisk_encryptor.domain.models import (
    DEFAULT_BLOCK_SIZE,
    DEFAULT_CIPHER,
    DEFAULT_KEY_SIZE,
    DEFAULT_MAPPER_NAME,
    DEFAULT_TPM2_PCRS,
    DEFAULT_TPM2_WIPE_SLOT,
    LUKS_HEADER_SIZE,
)


SETTINGS_PATH = Path(
    os.environ.get(
        "RAWDISK_ENCRYPTOR_SETTINGS_PATH",
        Path.home() / ".config" / "rawdisk-encryptor" / "settings.json",
    )
)

DEFAULT_TPM2_TIMEOUT_SECONDS = 120

DEFAULT_SETTINGS: dict[str, Any] = {
    "mapper_name": DEFAULT_MAPPER_NAME,
    "luks_cipher": DEFAULT_CIPHER,
    "luks_key_size": DEFAULT_KEY_SIZE,
    "luks_header_size": LUKS_HEADER_SIZE,
    "alignment": "mib",
    "dd_block_size": DEFAULT_BLOCK_SIZE,
    "tpm2_pcrs": list(DEFAULT_TPM2_PCRS),
    "tpm2_wipe_slot": DEFAULT_TPM2_WIPE_SLOT,
    "tpm2_timeout_seconds": DEFAULT_TPM2_TIMEOUT_SECONDS,
    "reclaim_stale_mapper": True,
    "install_missing_tools": True,
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


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
