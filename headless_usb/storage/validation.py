"""Safety validation for the destination device.

These checks run before any byte is written:
- The process runs with root privileges
- The path is an existing block device
- Neither the device nor any of its partitions is mounted
- The device is not the disk holding the running root filesystem

All validation functions raise specific exceptions from
headless_usb.exceptions rather than returning boolean values. The root guard
cannot be bypassed, not even with --yes.

Example:
    from headless_usb.storage.validation import inspect_device

    try:
        device = inspect_device("/dev/sdb")
    except DeviceBusyError as error:
        print(f"Unmount first: {error}")
"""

import os
import stat

from headless_usb.domain import Device, Transport
from headless_usb.exceptions import (
    DeviceBusyError,
    NotBlockDeviceError,
    NotRootError,
    RootDeviceConflictError,
    RootDeviceUnknownError,
)
from headless_usb.logging import LoggerFactory

from .devices import (
    describe_device,
    get_device_size_bytes,
    get_root_source,
    list_partition_nodes,
    read_mount_sources,
    resolve_root_disks,
    strip_partition_suffix,
)


log = LoggerFactory.for_device()


def require_root() -> None:
    """Raise NotRootError unless running with effective UID 0."""
    if os.geteuid() != 0:
        raise NotRootError()


def validate_block_device(device_path: str) -> str:
    """Validate the path is a block device and return its resolved node.

    Raises:
        NotBlockDeviceError: If the path is missing or not a block device
    """
    if not device_path:
        raise NotBlockDeviceError("(empty path)", "no path given")
    resolved = os.path.realpath(device_path)
    try:
        mode = os.stat(resolved).st_mode
    except FileNotFoundError:
        raise NotBlockDeviceError(device_path, "does not exist") from None
    except OSError as error:
        raise NotBlockDeviceError(device_path, str(error)) from error
    if not stat.S_ISBLK(mode):
        raise NotBlockDeviceError(device_path, "not a block device")
    return resolved


def validate_not_mounted(device_path: str) -> None:
    """Validate that neither the device nor any partition is mounted.

    Raises:
        DeviceBusyError: If any /proc/mounts source is the device or a partition
    """
    sources = read_mount_sources()
    if not sources:
        return
    try:
        nodes = {os.path.realpath(node) for node in list_partition_nodes(device_path)}
    except RuntimeError as error:
        log.warning(f"Falling back to name matching for mount check: {error}")
        nodes = set()
    nodes.add(device_path)
    busy = sorted(
        source
        for source in sources
        if source in nodes or strip_partition_suffix(source) == device_path
    )
    if busy:
        raise DeviceBusyError(device_path, busy)


def validate_not_root_device(device_path: str) -> None:
    """Validate the device does not hold the running root filesystem.

    The check fails closed: if the disks behind "/" cannot be worked out,
    nothing is written.

    Raises:
        RootDeviceConflictError: If the device is one of the root disks
        RootDeviceUnknownError: If the root source or its disks are unknown
    """
    root_source = get_root_source()
    if not root_source:
        raise RootDeviceUnknownError(device_path, "findmnt did not report the source of /")
    root_disks = resolve_root_disks(root_source)
    if not root_disks:
        raise RootDeviceUnknownError(
            device_path, f"/ is mounted from {root_source}, which maps to no block device"
        )
    if device_path in root_disks or strip_partition_suffix(device_path) in root_disks:
        raise RootDeviceConflictError(device_path, root_source)


def inspect_device(device_path: str) -> Device:
    """Run every safety check on a destination and describe it.

    Raises:
        NotRootError: If not running as root
        NotBlockDeviceError: If the path is not a block device
        DeviceBusyError: If the device or a partition is mounted
        RootDeviceConflictError: If the device backs the root filesystem
    """
    require_root()
    resolved = validate_block_device(device_path)
    validate_not_mounted(resolved)
    validate_not_root_device(resolved)

    device = describe_device(resolved)
    size_bytes = get_device_size_bytes(resolved)
    if device is None:
        device = Device(path=resolved, size_bytes=size_bytes or 0, transport=Transport.OTHER)
    elif size_bytes is not None and size_bytes != device.size_bytes:
        device = Device(
            path=resolved,
            size_bytes=size_bytes,
            transport=device.transport,
            removable=device.removable,
            mounted=device.mounted,
            model=device.model,
            vendor=device.vendor,
            device_type=device.device_type,
        )
    if not device.size_bytes:
        raise NotBlockDeviceError(device_path, "size could not be determined")
    if not device.is_usb:
        log.warning(f"{device.name} is not a USB device ({device.transport.value})")
    log.info(f"Destination {device.format_label()} passed safety checks")
    return device
