"""Settings storage for build defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from headless_usb.logging import LoggerFactory


SETTINGS_PATH = Path(
    os.environ.get(
        "HEADLESS_USB_SETTINGS_PATH",
        Path.home() / ".config" / "headless-usb-builder" / "settings.json",
    )
)

# Build defaults; CLI flags override them per run
MIB = 1024 * 1024
DEFAULT_RESERVED_MIN_BYTES = 128 * MIB
DEFAULT_PARTITION_LABEL = "OEMDRV"
DEFAULT_MANIFEST_FILENAME = "ks.cfg"
DEFAULT_DIAGNOSTIC_CONSOLE = "/dev/tty3"

DEFAULT_SETTINGS: dict[str, Any] = {
    "reserved_min_bytes": DEFAULT_RESERVED_MIN_BYTES,
    "partition_label": DEFAULT_PARTITION_LABEL,
    "manifest_filename": DEFAULT_MANIFEST_FILENAME,
    "write_block_size": "4M",
    "settle_timeout_seconds": 30,
    "diagnostic_console": DEFAULT_DIAGNOSTIC_CONSOLE,
    "autopart_type": "btrfs",
    "lang": "en_US.UTF-8",
    "keyboard": "us",
    "timezone": "UTC",
    "hostname": "headless",
    "username": "admin",
    "ssh_key_path": str(Path.home() / ".ssh" / "id_ed25519.pub"),
    "nameservers": ["1.1.1.1", "9.9.9.9"],
    "disable_av_drivers": True,
    "final_action": "poweroff",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        LoggerFactory.for_system().warning(
            f"Ignoring unreadable settings file {SETTINGS_PATH}: {error}"
        )
        return
    if isinstance(data, dict):
        settings_store.values.update(data)
    else:
        LoggerFactory.for_system().warning(
            f"Ignoring settings file {SETTINGS_PATH}: expected a JSON object"
        )


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
