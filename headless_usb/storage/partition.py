"""Configuration partition provisioning in the space the image left free.

Flow:
    1. Find the largest free region with parted (machine-readable, bytes)
    2. Snapshot the device's partition nodes
    3. Create one partition over the free region (sgdisk, else parted)
    4. Re-read the partition table and wait for udev
    5. Snapshot again; exactly one new node must have appeared
    6. Format it FAT32 with the configured label

The new node is never guessed: zero or several new nodes is an error.
"""

from __future__ import annotations

import shutil
from typing import Callable, Iterable, Optional

from headless_usb.config.settings import DEFAULT_PARTITION_LABEL
from headless_usb.domain import CapacityBudget, Device, FreeRegion, PartitionHandle, PartitionPlan
from headless_usb.exceptions import (
    NoFreeSpaceError,
    PartitionCreateFailedError,
    PartitionNotDetectedError,
)
from headless_usb.logging import LoggerFactory

from .command_runners import reread_partition_table, run_checked_command, run_with_spinner
from .devices import get_device_size_bytes, list_partition_nodes
from .format import format_partition
from .progress import human_size


log = LoggerFactory.for_partition()

ProgressCallback = Optional[Callable[[list[str], Optional[float]], None]]

# mkfs filesystem name -> parted fs-type hint
PARTED_FS_TYPES = {"vfat": "fat32"}


def _parse_bytes(value: str) -> int:
    return int(value.strip().rstrip("B"))


def parse_free_regions(parted_output: str) -> list[FreeRegion]:
    """Parse `parted -m unit B print free` output into free regions.

    Free lines look like "1:15728640000B:16008609791B:279969792B:free;".
    """
    regions = []
    for line in parted_output.splitlines():
        fields = line.strip().rstrip(";").split(":")
        if len(fields) < 5 or fields[4] != "free":
            continue
        try:
            regions.append(
                FreeRegion(
                    start_bytes=_parse_bytes(fields[1]),
                    end_bytes=_parse_bytes(fields[2]),
                    size_bytes=_parse_bytes(fields[3]),
                )
            )
        except ValueError:
            log.debug(f"Ignoring unparsable parted line: {line.strip()}")
    return regions


def query_free_space(device_path: str) -> Optional[FreeRegion]:
    """Return the largest free region on the device, or None if there is none."""
    try:
        output = run_checked_command(
            ["parted", "-m", "-s", device_path, "unit", "B", "print", "free"]
        )
    except (OSError, RuntimeError) as error:
        raise PartitionCreateFailedError(
            f"Could not read free space on {device_path}: {error}", device_path
        ) from error
    regions = parse_free_regions(output)
    if not regions:
        return None
    return max(regions, key=lambda region: region.size_bytes)


def snapshot_partitions(device_path: str) -> set[str]:
    try:
        return set(list_partition_nodes(device_path))
    except (OSError, RuntimeError) as error:
        raise PartitionNotDetectedError(device_path, []) from error


def detect_new_partition(device_path: str, before: Iterable[str], after: Iterable[str]) -> str:
    """Return the single node present in `after` but not in `before`.

    Raises:
        PartitionNotDetectedError: If zero or several nodes are new
    """
    new_nodes = sorted(set(after) - set(before))
    if len(new_nodes) != 1:
        raise PartitionNotDetectedError(device_path, new_nodes)
    return new_nodes[0]


def _creation_command(plan: PartitionPlan) -> list[str]:
    if shutil.which("sgdisk"):
        # sgdisk fills the largest free block by itself
        return ["sgdisk", "-N", "0", "-t", "0:0700", "-c", f"0:{plan.label}", plan.device_path]
    return [
        "parted",
        "-s",
        plan.device_path,
        "mkpart",
        "primary",
        PARTED_FS_TYPES[plan.filesystem],
        f"{plan.region.aligned_start_mib}MiB",
        f"{plan.region.aligned_end_mib}MiB",
    ]


def create_partition(
    plan: PartitionPlan,
    *,
    settle_timeout: int = 30,
    progress_callback: ProgressCallback = None,
) -> None:
    """Create the partition described by `plan` and wait for its node.

    Raises:
        PartitionCreateFailedError: If the tool or the table re-read fails
    """
    command = _creation_command(plan)
    try:
        run_with_spinner(command, "Adding partition", progress_callback=progress_callback)
        reread_partition_table(
            plan.device_path,
            settle_timeout=settle_timeout,
            progress_callback=progress_callback,
        )
    except (OSError, RuntimeError) as error:
        raise PartitionCreateFailedError(
            f"Failed to create partition on {plan.device_path}: {error}",
            plan.device_path,
        ) from error


def measure_partition(partition_path: str, reserved_min_bytes: int) -> int:
    """Return the created partition's real size, refusing one below the reserve.

    Raises:
        PartitionCreateFailedError: If the size is unreadable or too small
    """
    size_bytes = get_device_size_bytes(partition_path)
    if size_bytes is None:
        raise PartitionCreateFailedError(
            f"Could not read the size of {partition_path}", partition_path
        )
    if size_bytes < reserved_min_bytes:
        raise PartitionCreateFailedError(
            f"{partition_path} is {human_size(size_bytes)}, below the "
            f"{human_size(reserved_min_bytes)} reserve",
            partition_path,
        )
    return size_bytes


def provision(
    device: Device,
    budget: CapacityBudget,
    *,
    label: str = DEFAULT_PARTITION_LABEL,
    settle_timeout: int = 30,
    progress_callback: ProgressCallback = None,
) -> PartitionHandle:
    """Carve, detect and format the configuration partition.

    Raises:
        NoFreeSpaceError: If the largest free region, once MiB-aligned, is below the reserve
        PartitionCreateFailedError: If creation fails or the result is below the reserve
        PartitionNotDetectedError: If the new node is ambiguous
        FormatFailedError: If mkfs fails
    """
    region = query_free_space(device.path)
    # both tools align to whole MiB; only the aligned span counts
    usable_bytes = region.aligned_size_bytes if region else 0
    if region is None or usable_bytes < budget.reserved_min_bytes:
        raise NoFreeSpaceError(device.path, usable_bytes, budget.reserved_min_bytes)
    log.info(f"Free space after image: {human_size(usable_bytes)} usable on {device.path}")

    plan = PartitionPlan(device_path=device.path, region=region, label=label)
    before = snapshot_partitions(device.path)
    create_partition(plan, settle_timeout=settle_timeout, progress_callback=progress_callback)
    after = snapshot_partitions(device.path)
    partition_path = detect_new_partition(device.path, before, after)
    log.info(f"New partition detected: {partition_path}")
    size_bytes = measure_partition(partition_path, budget.reserved_min_bytes)

    format_partition(partition_path, label, filesystem=plan.filesystem)
    return PartitionHandle(
        device_path=device.path,
        partition_path=partition_path,
        label=label,
        size_bytes=size_bytes,
    )
