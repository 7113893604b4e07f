"""Sequential build pipeline.

Stages, in order:
    1. Tool and privilege preconditions
    2. Optional image checksum verification
    3. Destination inspection (mount and root-device guards)
    4. Capacity gate
    5. Manifest composition (pure, so mistakes surface before any write)
    6. Operator confirmation
    7. Raw image write
    8. Configuration partition provisioning
    9. Manifest placement and verification

Every stage either completes or raises a BuildError; nothing is retried and
nothing already written to the device is rolled back.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from headless_usb.config.settings import (
    DEFAULT_MANIFEST_FILENAME,
    DEFAULT_PARTITION_LABEL,
    DEFAULT_RESERVED_MIN_BYTES,
)
from headless_usb.domain import (
    CapacityBudget,
    Device,
    DiskTargetPolicy,
    Manifest,
    ManifestOptions,
    PartitionHandle,
)
from headless_usb.exceptions import (
    FormatFailedError,
    ManifestError,
    ManifestWriteError,
    OperatorAbortError,
    WriteFailedError,
)
from headless_usb.logging import LoggerFactory, operation_context
from headless_usb.manifest.composer import compose
from headless_usb.manifest.disk_policy import render_policy_script
from headless_usb.services.checksum import verify_image_checksum
from headless_usb.storage import capacity, image, partition
from headless_usb.storage.command_runners import (
    require_commands,
    require_one_of,
    run_checked_command,
)
from headless_usb.storage.format import verify_partition_label
from headless_usb.storage.mount import mounted_partition
from headless_usb.storage.validation import inspect_device, require_root


log = LoggerFactory.for_system()

REQUIRED_TOOLS = (
    "lsblk",
    "blockdev",
    "dd",
    "wipefs",
    "partprobe",
    "udevadm",
    "findmnt",
    "openssl",
    "mount",
    "umount",
    "sync",
    "parted",
)
MKFS_TOOLS = ("mkfs.vfat", "mkfs.fat")
PREVIEW_LINES = 120
SECTION_KEYWORDS = ("%pre", "%post", "%packages")

ConfirmCallback = Callable[[Device, CapacityBudget], bool]
ProgressCallback = Callable[[list, Optional[float]], None]


@dataclass(frozen=True)
class BuildRequest:
    """Everything a build needs, resolved before the pipeline starts."""

    image_path: Path
    device_path: str
    options: ManifestOptions
    policy: DiskTargetPolicy
    checksum_path: Optional[Path] = None
    reserved_min_bytes: int = DEFAULT_RESERVED_MIN_BYTES
    label: str = DEFAULT_PARTITION_LABEL
    manifest_filename: str = DEFAULT_MANIFEST_FILENAME
    block_size: str = "4M"
    settle_timeout: int = 30


@dataclass(frozen=True)
class BuildResult:
    device: Device
    budget: CapacityBudget
    partition: PartitionHandle
    manifest: Manifest


def check_tools() -> None:
    """Raise MissingToolError unless every external command is installed."""
    require_commands(REQUIRED_TOOLS)
    require_one_of(MKFS_TOOLS)


def build_manifest(
    options: ManifestOptions,
    policy: DiskTargetPolicy,
    filename: str = DEFAULT_MANIFEST_FILENAME,
) -> Manifest:
    """Render the disk policy and compose the full manifest."""
    try:
        script = render_policy_script(policy)
        manifest = compose(options, script, target_file=policy.target_file, filename=filename)
    except ValueError as error:
        raise ManifestError(f"Cannot compose manifest: {error}") from error
    opened = sum(manifest.directive_count(keyword) for keyword in SECTION_KEYWORDS)
    closed = manifest.directive_count("%end")
    if opened != closed:
        raise ManifestError(
            f"Cannot compose manifest: {opened} sections opened but {closed} closed"
        )
    return manifest


def save_manifest(manifest: Manifest, path: Path) -> Path:
    """Write a manifest to a local file (no device involved)."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(manifest.text, encoding="utf-8")
    except OSError as error:
        raise ManifestWriteError(f"Could not write manifest to {path}: {error}") from error
    log.info(f"Manifest written to {path}")
    return path


def log_preview(manifest: Manifest) -> None:
    preview = manifest.redacted().splitlines()[:PREVIEW_LINES]
    log.debug(
        "Manifest preview (first {} lines, password hash redacted):\n{}",
        PREVIEW_LINES,
        "\n".join(preview),
    )


def write_manifest_file(handle: PartitionHandle, manifest: Manifest) -> None:
    """Mount the partition, write the manifest, flush and verify it.

    Raises:
        ManifestWriteError: If mounting, writing, flushing or verification fails
    """
    try:
        with mounted_partition(handle.partition_path) as mountpoint:
            target = mountpoint / manifest.filename
            with open(target, "w", encoding="utf-8") as manifest_file:
                manifest_file.write(manifest.text)
                manifest_file.flush()
                os.fsync(manifest_file.fileno())
            run_checked_command(["sync"])
            if not target.is_file() or target.stat().st_size == 0:
                raise ManifestWriteError(
                    f"{manifest.filename} missing or empty on {handle.partition_path}"
                )
            log_preview(manifest)
    except (OSError, RuntimeError, ValueError) as error:
        raise ManifestWriteError(
            f"Could not write {manifest.filename} to {handle.partition_path}: {error}"
        ) from error

    try:
        verify_partition_label(handle.partition_path, handle.label)
    except FormatFailedError as error:
        raise ManifestWriteError(str(error)) from error


def run_build(
    request: BuildRequest,
    *,
    confirm: Optional[ConfirmCallback] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> BuildResult:
    """Run the whole pipeline against one device.

    Args:
        request: Resolved build inputs
        confirm: Called once before the first destructive step; returning
            False aborts the build
        progress_callback: Receives (lines, ratio) during long commands

    Raises:
        BuildError: Subclass matching the stage that failed
    """
    with operation_context("preflight", device=request.device_path):
        require_root()
        check_tools()
        if not Path(request.image_path).is_file():
            raise WriteFailedError(f"Image file not found: {request.image_path}")
        if request.checksum_path:
            verify_image_checksum(request.image_path, request.checksum_path)
        device = inspect_device(request.device_path)
        image_size = Path(request.image_path).stat().st_size
        budget = capacity.plan(device.size_bytes, image_size, request.reserved_min_bytes)
        manifest = build_manifest(request.options, request.policy, request.manifest_filename)

    if confirm is not None and not confirm(device, budget):
        raise OperatorAbortError()

    with operation_context("write", device=device.path):
        image.write_image(
            device,
            request.image_path,
            block_size=request.block_size,
            settle_timeout=request.settle_timeout,
            progress_callback=progress_callback,
        )

    with operation_context("provision", device=device.path):
        handle = partition.provision(
            device,
            budget,
            label=request.label,
            settle_timeout=request.settle_timeout,
            progress_callback=progress_callback,
        )

    with operation_context("manifest", partition=handle.partition_path):
        write_manifest_file(handle, manifest)

    log.success(
        f"USB ready: {device.path} boots the installer, "
        f"{handle.partition_path} ({handle.label}) carries {manifest.filename}"
    )
    return BuildResult(device=device, budget=budget, partition=handle, manifest=manifest)
