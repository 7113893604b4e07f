"""Transient mounting of the configuration partition.

The partition is mounted on a fresh temporary directory for exactly as long
as the manifest write takes. The directory is unmounted and removed on the
way out, whether or not the body raised.

Security Notes:
    - Partition paths must live under /dev/ and contain no shell metacharacters
    - mount and umount are invoked with argument lists, never through a shell
"""

import contextlib
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator

from headless_usb.logging import LoggerFactory


log = LoggerFactory.for_partition()

_FORBIDDEN_CHARS = [";", "&", "|", "$", "`", "\n", "\r", " "]
MOUNT_DIR_PREFIX = "oemdrv."


def validate_partition_path(partition: str) -> None:
    """Raise ValueError for anything that is not a plain /dev node path."""
    if not isinstance(partition, str) or not partition.startswith("/dev/"):
        raise ValueError(f"Invalid partition path: {partition}")
    if any(char in partition for char in _FORBIDDEN_CHARS):
        raise ValueError(f"Partition path contains invalid characters: {partition}")


def mount_partition(partition: str, mountpoint: Path) -> None:
    """Mount a partition on an existing directory.

    Raises:
        ValueError: If the partition path is invalid
        RuntimeError: If mount fails
    """
    validate_partition_path(partition)
    try:
        subprocess.run(
            ["mount", partition, str(mountpoint)],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(
            f"Failed to mount {partition} to {mountpoint}: {e.stderr.strip()}"
        ) from e
    except OSError as e:
        raise RuntimeError(f"Failed to mount {partition} to {mountpoint}: {e}") from e
    log.debug(f"Mounted {partition} on {mountpoint}")


def unmount_partition(mountpoint: Path) -> None:
    """Unmount a directory if something is mounted on it.

    Raises:
        RuntimeError: If umount fails
    """
    if not os.path.ismount(str(mountpoint)):
        return
    try:
        subprocess.run(
            ["umount", str(mountpoint)], check=True, capture_output=True, text=True
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to unmount {mountpoint}: {e.stderr.strip()}") from e
    log.debug(f"Unmounted {mountpoint}")


@contextlib.contextmanager
def mounted_partition(partition: str) -> Iterator[Path]:
    """Mount `partition` on a temporary directory and yield the directory."""
    validate_partition_path(partition)
    mountpoint = Path(tempfile.mkdtemp(prefix=MOUNT_DIR_PREFIX))
    try:
        mount_partition(partition, mountpoint)
        try:
            yield mountpoint
        finally:
            unmount_partition(mountpoint)
    finally:
        if not os.path.ismount(str(mountpoint)):
            shutil.rmtree(mountpoint, ignore_errors=True)
        else:
            log.warning(f"Leaving {mountpoint} in place; it is still mounted")
