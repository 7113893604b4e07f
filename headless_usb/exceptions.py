"""Custom exceptions for the USB build pipeline.

Every failure that can stop a build has its own class and a distinct process
exit code, so the CLI can fail fast and report exactly which stage refused to
continue.

Exception Hierarchy:
    BuildError (base)
        ├── PreconditionError
        │   ├── MissingToolError
        │   ├── NotRootError
        │   └── DeviceError
        │       ├── NotBlockDeviceError
        │       ├── DeviceBusyError
        │       ├── RootDeviceConflictError
        │       └── RootDeviceUnknownError
        ├── InsufficientCapacityError
        ├── ChecksumMismatchError
        ├── WriteFailedError
        ├── ProvisionError
        │   ├── NoFreeSpaceError
        │   ├── PartitionCreateFailedError
        │   ├── PartitionNotDetectedError
        │   └── FormatFailedError
        ├── ManifestError
        │   ├── CredentialError
        │   └── ManifestWriteError
        └── OperatorAbortError

Precondition and capacity errors are raised before anything destructive has
happened. Write and provisioning errors may leave the device partially
written; it is never rolled back.

Usage:
    from headless_usb.exceptions import InsufficientCapacityError

    if device_size < required:
        raise InsufficientCapacityError(required, device_size)
"""

from __future__ import annotations

from typing import Iterable, Optional


class BuildError(Exception):
    """Base exception for all build failures."""

    exit_code = 1


class PreconditionError(BuildError):
    """Base exception for checks that run before any destructive step."""


class MissingToolError(PreconditionError):
    """A required external command is not installed."""

    exit_code = 10

    def __init__(self, tools: Iterable[str], any_of: bool = False):
        self.tools = list(tools)
        self.any_of = any_of
        names = ", ".join(self.tools)
        if any_of:
            super().__init__(f"Missing one of: {names}")
        else:
            super().__init__(f"Missing command: {names}")


class NotRootError(PreconditionError):
    """The process does not run with root privileges."""

    exit_code = 11

    def __init__(self):
        super().__init__("Run as root")


class DeviceError(PreconditionError):
    """Base exception for device-related errors."""

    def __init__(self, device_path: str, message: str):
        self.device_path = device_path
        super().__init__(message)


class NotBlockDeviceError(DeviceError):
    """Path does not exist or is not a block device."""

    exit_code = 12

    def __init__(self, device_path: str, reason: str = ""):
        self.reason = reason
        msg = f"Invalid block device: {device_path}"
        if reason:
            msg += f" ({reason})"
        super().__init__(device_path, msg)


class DeviceBusyError(DeviceError):
    """Device or one of its partitions is currently mounted."""

    exit_code = 13

    def __init__(self, device_path: str, mount_sources: Iterable[str] = ()):
        self.mount_sources = list(mount_sources)
        msg = f"Device {device_path} appears mounted. Unmount first."
        if self.mount_sources:
            msg += f" Active: {', '.join(self.mount_sources)}"
        super().__init__(device_path, msg)


class RootDeviceConflictError(DeviceError):
    """Device backs the running system's root filesystem."""

    exit_code = 14

    def __init__(self, device_path: str, root_source: str):
        self.root_source = root_source
        super().__init__(
            device_path,
            f"Refusing to write to root device {device_path} (/ is on {root_source})",
        )


class RootDeviceUnknownError(DeviceError):
    """The disk behind the running root filesystem could not be determined."""

    exit_code = 14

    def __init__(self, device_path: str, reason: str):
        self.reason = reason
        super().__init__(
            device_path,
            f"Refusing to write to {device_path}: cannot tell which disk holds / ({reason})",
        )


class InsufficientCapacityError(BuildError):
    """Device is too small for the image plus the reserved headroom."""

    exit_code = 20

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"USB too small: need at least {required} bytes, "
            f"device has {available} bytes"
        )


class ChecksumMismatchError(BuildError):
    """Installation image does not match its published checksum."""

    exit_code = 21

    def __init__(self, image_name: str, expected: str, actual: str):
        self.image_name = image_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {image_name}: expected {expected}, got {actual}"
        )


class WriteFailedError(BuildError):
    """Raw image write, flush or partition table re-read failed."""

    exit_code = 30

    def __init__(self, message: str, device_path: Optional[str] = None):
        self.device_path = device_path
        super().__init__(message)


class ProvisionError(BuildError):
    """Base exception for second-partition provisioning failures."""

    def __init__(self, message: str, device_path: Optional[str] = None):
        self.device_path = device_path
        super().__init__(message)


class NoFreeSpaceError(ProvisionError):
    """Not enough unallocated space remains after the image write."""

    exit_code = 31

    def __init__(self, device_path: str, free_bytes: int, required: int):
        self.free_bytes = free_bytes
        self.required = required
        super().__init__(
            f"After writing the image, only {free_bytes} bytes are free on "
            f"{device_path} (need {required}). Use a larger USB.",
            device_path,
        )


class PartitionCreateFailedError(ProvisionError):
    """Partitioning tool failed to create the new partition."""

    exit_code = 32


class PartitionNotDetectedError(ProvisionError):
    """New partition node could not be identified unambiguously."""

    exit_code = 33

    def __init__(self, device_path: str, new_nodes: Iterable[str]):
        self.new_nodes = list(new_nodes)
        if self.new_nodes:
            detail = f"{len(self.new_nodes)} new nodes: {', '.join(self.new_nodes)}"
        else:
            detail = "no new node appeared"
        super().__init__(
            f"Failed to detect new partition on {device_path} ({detail})",
            device_path,
        )


class FormatFailedError(ProvisionError):
    """Filesystem creation on the new partition failed."""

    exit_code = 34


class ManifestError(BuildError):
    """Base exception for manifest composition and placement."""

    exit_code = 35


class CredentialError(ManifestError):
    """Password hashing or SSH key validation failed."""

    exit_code = 36


class ManifestWriteError(ManifestError):
    """Manifest could not be written to or verified on the partition."""

    exit_code = 35


class OperatorAbortError(BuildError):
    """Operator declined the destructive write."""

    exit_code = 40

    def __init__(self, message: str = "Aborted"):
        super().__init__(message)
