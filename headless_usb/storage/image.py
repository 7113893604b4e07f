"""Raw installation image writing.

The image is copied over the whole device with dd. Anything on the device
before the write is lost, and nothing is rolled back on failure.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from headless_usb.domain import Device
from headless_usb.exceptions import WriteFailedError
from headless_usb.logging import LoggerFactory

from .command_runners import (
    reread_partition_table,
    run_checked_command,
    run_checked_with_streaming_progress,
    run_command,
)


def wipe_signatures(device_path: str, log) -> None:
    """Best-effort removal of old filesystem and partition table signatures."""
    try:
        result = run_command(["wipefs", "-a", device_path], check=False)
    except OSError as error:
        log.warning(f"wipefs could not run: {error}")
        return
    if result.returncode != 0:
        log.warning(
            f"wipefs failed on {device_path} (continuing): "
            f"{(result.stderr or '').strip()}"
        )


def write_image(
    device: Device,
    image_path: Path,
    *,
    block_size: str = "4M",
    settle_timeout: int = 30,
    progress_callback: Callable[[list[str], float | None], None] | None = None,
) -> None:
    """Write an installation image to the device and flush it.

    Args:
        device: Inspected destination device
        image_path: Path to the ISO image
        block_size: dd block size
        settle_timeout: Seconds to wait for udev after the re-read
        progress_callback: Optional callback for progress updates

    Raises:
        WriteFailedError: If the image is missing, or dd, sync or the
            partition table re-read fails
    """
    image_path = Path(image_path)
    log = LoggerFactory.for_image()
    if not image_path.is_file():
        raise WriteFailedError(f"Image file not found: {image_path}", device.path)
    image_size = image_path.stat().st_size

    wipe_signatures(device.path, log)

    command = [
        "dd",
        f"if={image_path}",
        f"of={device.path}",
        f"bs={block_size}",
        "oflag=sync",
        "conv=fsync",
        "status=progress",
    ]
    log.info(f"Writing {image_path.name} to {device.path}")
    try:
        run_checked_with_streaming_progress(
            command,
            total_bytes=image_size,
            title=f"Writing {image_path.name}",
            progress_callback=progress_callback,
        )
    except (OSError, RuntimeError) as error:
        raise WriteFailedError(f"Image write failed: {error}", device.path) from error

    try:
        run_checked_command(["sync"])
        reread_partition_table(
            device.path,
            settle_timeout=settle_timeout,
            progress_callback=progress_callback,
        )
    except (OSError, RuntimeError) as error:
        raise WriteFailedError(
            f"Flushing {device.path} after write failed: {error}", device.path
        ) from error
    log.info(f"Wrote {image_size} bytes to {device.path}")
