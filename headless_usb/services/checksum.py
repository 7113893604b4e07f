"""Installation image checksum verification.

Understands both the Fedora CHECKSUM format and GNU coreutils output:

    SHA256 (Fedora-Server-dvd-x86_64-41-1.4.iso) = 3f5a...
    3f5a...  Fedora-Server-dvd-x86_64-41-1.4.iso

A mismatch is fatal. A checksum file that cannot be read, or that has no
entry for the image, only produces a warning.
"""

import hashlib
import re
from pathlib import Path
from typing import Optional

from headless_usb.exceptions import ChecksumMismatchError
from headless_usb.logging import LoggerFactory


log = LoggerFactory.for_image()

CHUNK_SIZE = 4 * 1024 * 1024

_BSD_PATTERN = re.compile(r"^SHA256 \((?P<name>.+)\) = (?P<digest>[0-9a-fA-F]{64})$")
_GNU_PATTERN = re.compile(r"^(?P<digest>[0-9a-fA-F]{64}) [ *](?P<name>.+)$")


def parse_expected_checksum(text: str, image_name: str) -> Optional[str]:
    """Return the lower-case SHA-256 listed for `image_name`, if any."""
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = _BSD_PATTERN.match(line) or _GNU_PATTERN.match(line)
        if not match:
            continue
        name = match.group("name").strip().lstrip("*")
        if Path(name).name == image_name:
            return match.group("digest").lower()
    return None


def sha256_file(path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_image_checksum(image_path: Path, checksum_path: Path) -> bool:
    """Verify the image against a checksum file.

    Returns:
        True if verified, False if the checksum file gave no usable entry

    Raises:
        ChecksumMismatchError: If the digests differ
    """
    image_path = Path(image_path)
    try:
        text = Path(checksum_path).read_text(encoding="utf-8", errors="replace")
    except OSError as error:
        log.warning(f"Could not read checksum file {checksum_path}: {error}")
        return False
    expected = parse_expected_checksum(text, image_path.name)
    if expected is None:
        log.warning(f"No SHA256 entry for {image_path.name} in {checksum_path}; skipping check")
        return False

    log.info(f"Verifying SHA256 of {image_path.name}")
    actual = sha256_file(image_path)
    if actual != expected:
        raise ChecksumMismatchError(image_path.name, expected, actual)
    log.success(f"Checksum verified for {image_path.name}")
    return True
