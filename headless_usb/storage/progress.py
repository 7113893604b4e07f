"""Progress parsing and formatting for long-running device commands."""

import re
from typing import Optional


SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
_PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)%")
_RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([KMG]B|[KMG]iB)/s")

_RATE_UNITS = {
    "KB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
}


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(size)}{unit}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def parse_dd_progress(line: str) -> tuple[Optional[int], Optional[float]]:
    """Extract (bytes copied, rate in bytes/s) from a dd status=progress line.

    dd prints e.g. "1048576000 bytes (1.0 GB, 1000 MiB) copied, 5 s, 210 MB/s".
    """
    bytes_copied = None
    rate = None
    bytes_match = _BYTES_PATTERN.search(line)
    if bytes_match:
        bytes_copied = int(bytes_match.group(1))
    rate_match = _RATE_PATTERN.search(line)
    if rate_match:
        rate = float(rate_match.group(1)) * _RATE_UNITS[rate_match.group(2)]
    return bytes_copied, rate


def parse_percent(line: str) -> Optional[float]:
    match = _PERCENT_PATTERN.search(line)
    if match:
        return float(match.group(1))
    return None


def format_progress_lines(
    title,
    bytes_copied,
    total_bytes,
    rate=None,
    eta=None,
    spinner=None,
    subtitle=None,
):
    """Format progress information into display lines."""
    lines = []
    if title:
        lines.append(f"{title} {spinner}" if spinner else title)
    if subtitle:
        lines.append(subtitle)
    if bytes_copied is not None:
        written_line = f"Wrote {human_size(bytes_copied)}"
        if total_bytes:
            percent = min(100.0, (bytes_copied / total_bytes) * 100)
            written_line = f"{written_line} / {human_size(total_bytes)} {percent:.1f}%"
        lines.append(written_line)
    else:
        lines.append("Working...")
    if rate:
        rate_line = f"{human_size(rate)}/s"
        if eta:
            rate_line = f"{rate_line} ETA {eta}"
        lines.append(rate_line)
    return lines


def compute_ratio(bytes_copied, total_bytes) -> Optional[float]:
    if bytes_copied is None or not total_bytes:
        return None
    return max(0.0, min(1.0, float(bytes_copied) / total_bytes))
