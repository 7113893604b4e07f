"""Domain model for the USB build pipeline.

Type-safe value objects passed between stages instead of raw lsblk dicts
and ambient prompt answers. Everything here is immutable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple

MIB = 1024 * 1024


# ==============================================================================
# Device Domain
# ==============================================================================


class Transport(str, Enum):
    """Bus class of a block device."""

    USB = "usb"
    INTERNAL = "internal"
    OTHER = "other"

    @classmethod
    def from_lsblk(cls, tran: Optional[str]) -> Transport:
        if not tran:
            return cls.OTHER
        tran = tran.lower()
        if tran == "usb":
            return cls.USB
        if tran in ("sata", "ata", "nvme", "sas", "scsi", "mmc", "virtio"):
            return cls.INTERNAL
        return cls.OTHER


def _flag(value: Any) -> bool:
    """Interpret lsblk boolean columns, which vary between bool, int and str."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return bool(value)


def _has_mountpoint(entry: dict[str, Any]) -> bool:
    if entry.get("mountpoint"):
        return True
    mountpoints = entry.get("mountpoints") or []
    if any(mountpoints):
        return True
    return any(_has_mountpoint(child) for child in entry.get("children") or [])


@dataclass(frozen=True)
class Device:
    """A whole block device as seen on the build machine."""

    path: str  # e.g., "/dev/sdb"
    size_bytes: int
    transport: Transport = Transport.OTHER
    removable: bool = False
    mounted: bool = False
    model: Optional[str] = None
    vendor: Optional[str] = None
    device_type: str = "disk"

    @property
    def name(self) -> str:
        """Kernel name (e.g., sdb)."""
        return self.path.rsplit("/", 1)[-1]

    @property
    def is_usb(self) -> bool:
        return self.transport is Transport.USB

    def format_label(self) -> str:
        """Human-readable label, e.g. "sdb SanDisk Cruzer (14.9GB)"."""
        size_str = f"{self.size_bytes / (1024 ** 3):.1f}GB"
        parts = [part.strip() for part in (self.vendor, self.model) if part]
        if parts:
            return f"{self.name} {' '.join(parts)} ({size_str})"
        return f"{self.name} {size_str}"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> Device:
        """Convert one lsblk JSON entry (with -b sizes) to a Device.

        Raises:
            KeyError: If the name column is missing
            ValueError: If size cannot be converted to int
        """
        name = device["name"]
        path = device.get("path") or (name if name.startswith("/dev/") else f"/dev/{name}")
        model = device.get("model")
        vendor = device.get("vendor")
        return cls(
            path=path,
            size_bytes=int(device.get("size") or 0),
            transport=Transport.from_lsblk(device.get("tran")),
            removable=_flag(device.get("rm")),
            mounted=_has_mountpoint(device),
            model=model.strip() if model else None,
            vendor=vendor.strip() if vendor else None,
            device_type=device.get("type") or "disk",
        )


# ==============================================================================
# Capacity and Partition Domain
# ==============================================================================


@dataclass(frozen=True)
class CapacityBudget:
    """Byte budget for the image plus the configuration partition headroom."""

    device_size_bytes: int
    image_size_bytes: int
    reserved_min_bytes: int

    @property
    def required_total_bytes(self) -> int:
        return self.image_size_bytes + self.reserved_min_bytes

    @property
    def spare_bytes(self) -> int:
        """Bytes left for the second partition once the image is written."""
        return self.device_size_bytes - self.image_size_bytes


@dataclass(frozen=True)
class FreeRegion:
    """One unallocated region reported by parted, in bytes (end inclusive)."""

    start_bytes: int
    end_bytes: int
    size_bytes: int

    @property
    def aligned_start_mib(self) -> int:
        return -(-self.start_bytes // MIB)

    @property
    def aligned_end_mib(self) -> int:
        """Exclusive end, rounded down to a whole MiB."""
        return (self.end_bytes + 1) // MIB

    @property
    def aligned_size_bytes(self) -> int:
        """Bytes a MiB-aligned partition over this region can actually hold."""
        return max(0, self.aligned_end_mib - self.aligned_start_mib) * MIB


@dataclass(frozen=True)
class PartitionPlan:
    """Where the configuration partition goes; consumed once by provisioning."""

    device_path: str
    region: FreeRegion
    label: str
    filesystem: str = "vfat"


@dataclass(frozen=True)
class PartitionHandle:
    """Result of provisioning: the formatted, labelled partition node."""

    device_path: str
    partition_path: str
    label: str
    size_bytes: int


# ==============================================================================
# Disk Targeting Domain
# ==============================================================================


class TargetMode(str, Enum):
    """How the installer picks the disk(s) to erase on the target machine."""

    AUTO_SINGLE = "AUTO_SINGLE"
    ALL_INTERNAL = "ALL_INTERNAL"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value: str) -> TargetMode:
        """Accept enum values and CLI spellings like "all-internal"."""
        normalized = value.strip().upper().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown target mode: {value}") from None


# goes verbatim into "ignoredisk --only-use=", so no separators or whitespace
_DISK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+\Z")


@dataclass(frozen=True)
class DiskTargetPolicy:
    """Declarative disk selection, evaluated later inside the installer."""

    mode: TargetMode = TargetMode.AUTO_SINGLE
    manual_device: Optional[str] = None
    autopart_type: str = "btrfs"
    target_file: str = "/tmp/target.ks"
    diagnostic_console: str = "/dev/tty3"

    def __post_init__(self) -> None:
        if self.manual_device:
            # Installer-side names never carry the /dev/ prefix
            name = self.manual_device.strip().removeprefix("/dev/")
            if not _DISK_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid disk name: {self.manual_device!r}")
            object.__setattr__(self, "manual_device", name)

    def to_payload(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "manual_device": self.manual_device or "",
            "autopart_type": self.autopart_type,
            "target_file": self.target_file,
            "diagnostic_console": self.diagnostic_console,
        }


# ==============================================================================
# Manifest Domain
# ==============================================================================


@dataclass(frozen=True)
class NetworkConfig:
    """Either DHCP or a single static address on the first linked NIC."""

    hostname: str
    dhcp: bool = True
    ip: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    nameservers: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.dhcp:
            missing = [
                name
                for name in ("ip", "netmask", "gateway")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"Static networking requires: {', '.join(missing)}"
                )


@dataclass(frozen=True)
class UserAccount:
    """Admin account; the password is only ever held as a crypt hash."""

    name: str
    password_hash: str
    ssh_public_key: str

    def __repr__(self) -> str:
        return f"UserAccount(name={self.name!r}, password_hash='<redacted>')"


DEFAULT_PACKAGES: Tuple[str, ...] = (
    "@^minimal-environment",
    "sudo",
    "openssh-server",
    "chrony",
)

DEFAULT_DENYLIST_MODULES: Tuple[str, ...] = (
    "snd_hda_intel",
    "snd_hda_codec_hdmi",
    "snd_hda_codec",
    "snd_hda_core",
    "snd_pcm",
    "snd_timer",
    "snd",
    "soundcore",
)

DEFAULT_VIDEO_DENYLIST_MODULES: Tuple[str, ...] = ("uvcvideo", "videodev")


@dataclass(frozen=True)
class ManifestOptions:
    """Everything the operator chose, passed by value into the composer."""

    network: NetworkConfig
    user: UserAccount
    lang: str = "en_US.UTF-8"
    keyboard: str = "us"
    timezone: str = "UTC"
    disable_av_drivers: bool = True
    sound_denylist: Tuple[str, ...] = DEFAULT_DENYLIST_MODULES
    video_denylist: Tuple[str, ...] = DEFAULT_VIDEO_DENYLIST_MODULES
    final_action: str = "poweroff"
    packages: Tuple[str, ...] = DEFAULT_PACKAGES
    release_label: str = ""

    def __post_init__(self) -> None:
        if self.final_action not in ("poweroff", "reboot"):
            raise ValueError(f"Final action must be poweroff or reboot: {self.final_action}")


@dataclass(frozen=True)
class Manifest:
    """A complete kickstart document."""

    text: str
    filename: str = "ks.cfg"
    lines: Tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "lines", tuple(self.text.splitlines()))

    def redacted(self) -> str:
        """Manifest text with the credential hash replaced."""
        return re.sub(r"--password '[^']*'", "--password '<redacted>'", self.text)

    def directive_count(self, keyword: str) -> int:
        """Count top-level lines starting with a directive keyword."""
        return sum(
            1 for line in self.lines if line.split(" ", 1)[0] == keyword
        )
