"""Block device enumeration and queries using lsblk, findmnt and blockdev.

Device Detection:
    Uses lsblk with JSON output and byte sizes to enumerate whole disks:
    - Kernel name and /dev path
    - Size in bytes
    - Transport (usb, sata, nvme, ...)
    - Removable flag
    - Vendor and model strings
    - Mountpoints of the disk and its partitions

Root Resolution:
    The disk backing the running root filesystem is found by asking findmnt
    for the source of "/" and walking lsblk's inverse dependency tree up to
    the TYPE=disk ancestors. This covers LVM, dm-crypt and btrfs subvolume
    sources. When lsblk cannot answer, the partition suffix is stripped from
    the source name instead.

Operations:
    - get_block_devices(): Raw lsblk entries
    - list_devices(): Whole disks as Device objects, pseudo-devices excluded
    - get_device_size_bytes(): Exact size from blockdev
    - list_partition_nodes(): Device node plus every partition node
    - read_mount_sources(): Device sources from /proc/mounts
    - resolve_root_disks(): Disks holding the running root filesystem
    - strip_partition_suffix(): sda2 -> sda, nvme0n1p3 -> nvme0n1

Example:
    >>> from headless_usb.storage.devices import list_devices
    >>> for device in list_devices():
    ...     print(format_device_label(device))
    sdb SanDisk Cruzer (14.9GB)
"""

import json
import os
import re
import subprocess
from typing import Optional

from headless_usb.domain import Device
from headless_usb.logging import LoggerFactory

from .command_runners import run_command
from .progress import human_size


log = LoggerFactory.for_device()

PSEUDO_DEVICE_PREFIXES = ("loop", "ram", "zram")
LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,RM,TRAN,MODEL,VENDOR,MOUNTPOINT"

_SUFFIX_P_PATTERN = re.compile(r"^((?:nvme\d+n\d+)|(?:mmcblk\d+)|(?:loop\d+)|(?:nbd\d+))p\d+$")
_SUFFIX_DIGIT_PATTERN = re.compile(r"^((?:sd|vd|hd|xvd)[a-z]+)\d+$")


def get_block_devices(device_path: Optional[str] = None) -> list[dict]:
    """Return lsblk entries (top level disks with nested children)."""
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device_path:
        command.append(device_path)
    try:
        result = run_command(command, log_output=False)
    except (OSError, subprocess.CalledProcessError) as error:
        log.error(f"lsblk failed: {error}")
        return []
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        log.error(f"Could not parse lsblk output: {error}")
        return []
    return data.get("blockdevices", [])


def is_pseudo_device(name: str) -> bool:
    name = name.rsplit("/", 1)[-1]
    return name.startswith(PSEUDO_DEVICE_PREFIXES)


def list_devices() -> list[Device]:
    """List whole disks, excluding loop, ram and zram pseudo-devices."""
    devices = []
    for entry in get_block_devices():
        if entry.get("type") != "disk" or is_pseudo_device(entry.get("name", "")):
            continue
        try:
            devices.append(Device.from_lsblk_dict(entry))
        except (KeyError, ValueError) as error:
            log.warning(f"Skipping unreadable lsblk entry {entry.get('name')}: {error}")
    log.debug(f"Found {len(devices)} disk(s): {[device.name for device in devices]}")
    return devices


def describe_device(device_path: str) -> Optional[Device]:
    """Build a Device for one path from lsblk, or None if lsblk has no entry."""
    entries = get_block_devices(device_path)
    if not entries:
        return None
    return Device.from_lsblk_dict(entries[0])


def get_device_size_bytes(device_path: str) -> Optional[int]:
    """Return the exact device size, preferring blockdev over lsblk."""
    result = run_command(["blockdev", "--getsize64", device_path], check=False)
    if result.returncode == 0 and result.stdout.strip().isdigit():
        return int(result.stdout.strip())
    result = run_command(["lsblk", "-b", "-d", "-n", "-o", "SIZE", device_path], check=False)
    if result.returncode == 0 and result.stdout.strip().isdigit():
        return int(result.stdout.strip())
    return None


def list_partition_nodes(device_path: str) -> list[str]:
    """Return the device node followed by all of its partition nodes."""
    result = run_command(["lsblk", "-l", "-n", "-p", "-o", "NAME", device_path], check=False)
    if result.returncode != 0:
        raise RuntimeError(
            f"lsblk could not list {device_path}: {(result.stderr or '').strip()}"
        )
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def read_mount_sources(mounts_path: str = "/proc/mounts") -> set[str]:
    """Return the resolved /dev sources of every active mount."""
    sources = set()
    try:
        with open(mounts_path, "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if parts and parts[0].startswith("/dev/"):
                    sources.add(os.path.realpath(parts[0]))
    except FileNotFoundError:
        log.warning(f"{mounts_path} not found; mount state unknown")
    return sources


def strip_partition_suffix(path: str) -> str:
    """Map a partition node to its parent disk node by name alone."""
    directory, _, name = path.rpartition("/")
    match = _SUFFIX_P_PATTERN.match(name) or _SUFFIX_DIGIT_PATTERN.match(name)
    if not match:
        return path
    base = match.group(1)
    return f"{directory}/{base}" if directory else base


def get_root_source() -> Optional[str]:
    """Return the device backing "/", without any btrfs [subvol] suffix."""
    result = run_command(["findmnt", "-n", "-o", "SOURCE", "/"], check=False)
    if result.returncode != 0:
        return None
    source = result.stdout.strip().split("[", 1)[0]
    return source or None


def resolve_root_disks(root_source: Optional[str] = None) -> set[str]:
    """Return every whole disk that the running root filesystem depends on."""
    if root_source is None:
        root_source = get_root_source()
    if not root_source or not root_source.startswith("/dev/"):
        return set()
    root_source = os.path.realpath(root_source)
    disks = set()
    result = run_command(
        ["lsblk", "-n", "-r", "-p", "-s", "-o", "NAME,TYPE", root_source], check=False
    )
    if result.returncode == 0:
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1] == "disk":
                disks.add(parts[0])
    if not disks:
        disks.add(strip_partition_suffix(root_source))
    log.debug(f"Root filesystem {root_source} lives on {sorted(disks)}")
    return disks


def format_device_label(device) -> str:
    if isinstance(device, Device):
        return device.format_label()
    name = str(device).rsplit("/", 1)[-1]
    return name


__all__ = [
    "describe_device",
    "format_device_label",
    "get_block_devices",
    "get_device_size_bytes",
    "get_root_source",
    "human_size",
    "is_pseudo_device",
    "list_devices",
    "list_partition_nodes",
    "read_mount_sources",
    "resolve_root_disks",
    "strip_partition_suffix",
]
