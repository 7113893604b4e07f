"""Command execution utilities with progress tracking.

Every external tool the build touches goes through these helpers so command
lines, exit codes and tool output land in the debug log. Failures raise
RuntimeError; stage modules translate that into their typed BuildError.
"""

import itertools
import select
import shutil
import subprocess
import time
from typing import Callable, Iterable, List, Optional, Sequence

from headless_usb.exceptions import MissingToolError
from headless_usb.logging import LoggerFactory, ThrottledLogger

from .progress import (
    SPINNER_FRAMES,
    compute_ratio,
    format_eta,
    format_progress_lines,
    parse_dd_progress,
)


log = LoggerFactory.for_system()

ProgressCallback = Callable[[List[str], Optional[float]], None]


def run_command(command, check=True, log_output=True, log_command=True, input_text=None):
    """Run a command capturing text output, logging it at DEBUG level."""
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, input=input_text
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(command, input_text=None, log_output=True):
    """Run a command and raise RuntimeError if it fails."""
    try:
        result = run_command(
            command, check=False, input_text=input_text, log_output=log_output
        )
    except OSError as error:
        raise RuntimeError(f"Command failed ({' '.join(command)}): {error}") from error
    if result.returncode != 0:
        raise _failure(command, result.stderr, result.stdout)
    return result.stdout


def require_commands(commands: Iterable[str]) -> None:
    """Raise MissingToolError for the first command not found on PATH."""
    for command in commands:
        if not shutil.which(command):
            raise MissingToolError([command])


def require_one_of(commands: Sequence[str]) -> str:
    """Return the first available command of several alternatives."""
    for command in commands:
        if shutil.which(command):
            return command
    raise MissingToolError(commands, any_of=True)


def _notify(progress_callback, lines, ratio=None):
    # display problems never fail the command being watched
    if progress_callback is None:
        return
    try:
        progress_callback(lines, ratio)
    except Exception as error:  # noqa: BLE001
        log.trace(f"Progress callback failed: {error}")


def _failure(command, *outputs) -> RuntimeError:
    message = next((text.strip() for text in outputs if text and text.strip()), "Command failed")
    return RuntimeError(f"Command failed ({' '.join(command)}): {message}")


def run_with_spinner(
    command,
    title: str,
    progress_callback: Optional[ProgressCallback] = None,
    refresh_interval: float = 0.1,
):
    """Run a blocking command, animating a spinner while the process lives.

    Only the exit status decides success.
    """
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    frames = itertools.cycle(SPINNER_FRAMES)
    while process.poll() is None:
        _notify(progress_callback, [f"{title} {next(frames)}"])
        time.sleep(refresh_interval)
    stdout, stderr = process.communicate()
    for name, text in (("stdout", stdout), ("stderr", stderr)):
        if text:
            log.debug(f"{name}: {text.strip()}")
    if process.returncode != 0:
        raise _failure(command, stderr, stdout)
    _notify(progress_callback, [title, "Complete"], 1.0)
    return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)


class _CopyTracker:
    """Running totals for a dd copy: bytes, rate and ETA."""

    def __init__(self, title, total_bytes=None, subtitle=None):
        self.title = title
        self.total_bytes = total_bytes
        self.subtitle = subtitle
        self.copied = 0 if total_bytes else None
        self.rate = None
        self.eta = None
        self._sampled_at = None

    def update(self, fragment: str, now: float) -> bool:
        """Fold one dd status fragment in; False if it carried no byte count."""
        copied, rate = parse_dd_progress(fragment)
        if copied is None:
            return False
        if rate is None and self._sampled_at is not None and self.copied is not None:
            elapsed = now - self._sampled_at
            if elapsed > 0 and copied >= self.copied:
                rate = (copied - self.copied) / elapsed
        if rate and self.total_bytes and copied <= self.total_bytes:
            self.eta = format_eta((self.total_bytes - copied) / rate)
        self.copied = copied
        self._sampled_at = now
        self.rate = rate or self.rate
        return True

    @property
    def ratio(self):
        return compute_ratio(self.copied, self.total_bytes)

    def lines(self, spinner: str = "") -> List[str]:
        return format_progress_lines(
            self.title,
            self.copied,
            self.total_bytes,
            self.rate,
            self.eta,
            spinner,
            subtitle=self.subtitle,
        )


def run_checked_with_streaming_progress(
    command,
    total_bytes=None,
    title="WORKING",
    progress_callback: Optional[ProgressCallback] = None,
    subtitle=None,
    refresh_interval: float = 1.0,
):
    """Run dd (or anything printing dd-style status) and stream its progress.

    Progress is read from stderr; between status lines the spinner keeps
    turning once per ``refresh_interval``.
    """
    progress_log = ThrottledLogger(log.bind(tags=["progress"]), interval_seconds=5.0)
    tracker = _CopyTracker(title, total_bytes, subtitle)
    frames = itertools.cycle(SPINNER_FRAMES)
    spinner = next(frames)

    _notify(progress_callback, tracker.lines(), tracker.ratio)
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    captured = []
    redrawn_at = time.time()
    while True:
        ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
        now = time.time()
        line = process.stderr.readline() if ready else None
        if line:
            captured.append(line)
            # dd rewrites its status line with carriage returns
            for fragment in filter(str.strip, line.replace("\r", "\n").splitlines()):
                log.trace(f"stderr: {fragment.strip()}")
                if tracker.update(fragment, now):
                    progress_log.debug(title, f"{title}: {tracker.copied} bytes written")
        elif now - redrawn_at >= refresh_interval:
            spinner = next(frames)
        if line or now - redrawn_at >= refresh_interval:
            _notify(progress_callback, tracker.lines(spinner), tracker.ratio)
            redrawn_at = now
        if process.poll() is not None and not line:
            break

    tail = process.stderr.read() if process.stderr else ""
    if tail:
        captured.append(tail)
    stdout = process.stdout.read() if process.stdout else ""
    process.wait()
    stderr = "".join(captured)
    if process.returncode != 0:
        raise _failure(command, stderr, stdout)
    _notify(progress_callback, [title, "Complete"], 1.0)
    return subprocess.CompletedProcess(command, process.returncode, stdout=stdout, stderr=stderr)


def reread_partition_table(
    device_path: str,
    settle_timeout: int = 30,
    progress_callback: Optional[ProgressCallback] = None,
) -> None:
    """Have the kernel re-read the partition table, then wait for udev.

    Raises RuntimeError if either step fails: the device must not be
    queried again before its nodes have settled.
    """
    run_with_spinner(
        ["partprobe", device_path],
        "Refreshing kernel view",
        progress_callback=progress_callback,
    )
    run_checked_command(["udevadm", "settle", f"--timeout={settle_timeout}"])
