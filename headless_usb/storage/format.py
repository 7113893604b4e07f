"""FAT32 formatting of the configuration partition.

The installer locates its manifest by filesystem label, so the label is part
of the contract: it is validated before mkfs runs and read back afterwards.

Operations:
    - validate_label(): Check a FAT volume label
    - format_partition(): mkfs.vfat (or mkfs.fat) with the label
    - read_partition_label(): Label as currently reported by lsblk
    - verify_partition_label(): Raise if the label does not match
"""

import contextlib
import re
import shutil
import subprocess

from headless_usb.exceptions import FormatFailedError
from headless_usb.logging import LoggerFactory

from .command_runners import run_checked_command, run_command


log = LoggerFactory.for_partition()

FAT_LABEL_MAX_LENGTH = 11
_FAT_LABEL_FORBIDDEN = re.compile(r'["*+,./:;<=>?\[\\\]|]')
MKFS_COMMANDS = ("mkfs.vfat", "mkfs.fat")


def validate_label(label: str) -> str:
    """Return the label if it is a legal FAT volume label.

    Raises:
        ValueError: If the label is empty, too long or has illegal characters
    """
    if not label:
        raise ValueError("Partition label must not be empty")
    if len(label) > FAT_LABEL_MAX_LENGTH:
        raise ValueError(
            f"Partition label {label!r} is longer than {FAT_LABEL_MAX_LENGTH} characters"
        )
    if not label.isascii() or not label.isprintable() or label != label.upper():
        raise ValueError(f"Partition label {label!r} must be upper-case ASCII")
    if _FAT_LABEL_FORBIDDEN.search(label):
        raise ValueError(f"Partition label {label!r} contains characters FAT forbids")
    return label


def _mkfs_command() -> str:
    for command in MKFS_COMMANDS:
        if shutil.which(command):
            return command
    return MKFS_COMMANDS[0]


def format_partition(partition_path: str, label: str, filesystem: str = "vfat") -> None:
    """Create a FAT32 filesystem labelled `label` on the partition.

    Raises:
        FormatFailedError: If the filesystem is not vfat, the label is
            invalid, or mkfs fails
    """
    if filesystem != "vfat":
        raise FormatFailedError(
            f"Unsupported filesystem {filesystem!r} (only vfat)",
            partition_path,
        )
    try:
        validate_label(label)
    except ValueError as error:
        raise FormatFailedError(str(error), partition_path) from error

    command = [_mkfs_command(), "-F", "32", "-n", label, partition_path]
    log.debug(f"Formatting {partition_path} as vfat with label {label}")
    try:
        run_checked_command(command)
    except (OSError, RuntimeError) as error:
        raise FormatFailedError(
            f"Failed to format {partition_path}: {error}", partition_path
        ) from error
    with contextlib.suppress(subprocess.CalledProcessError, OSError):
        run_command(["udevadm", "settle"], check=False)
    log.info(f"Formatted {partition_path} as FAT32 ({label})")


def read_partition_label(partition_path: str) -> str:
    result = run_command(["lsblk", "-n", "-o", "LABEL", partition_path], check=False)
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def verify_partition_label(partition_path: str, label: str) -> None:
    """Confirm the partition still reports the expected label.

    Raises:
        FormatFailedError: If the label differs
    """
    actual = read_partition_label(partition_path)
    if actual != label:
        raise FormatFailedError(
            f"Partition {partition_path} has label {actual or '(none)'}, expected {label}",
            partition_path,
        )
    log.debug(f"Partition {partition_path} carries label {label}")
