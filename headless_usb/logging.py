"""Loguru configuration for the build pipeline.

Records carry three extras used by every sink format: ``source`` (which part
of the pipeline logged), ``job_id`` (one build stage or image write) and
``tags`` (free-form labels; ``progress`` marks dd chatter).

Sinks:
    stderr            operator-facing, coloured, INFO by default
    operations.log    INFO+, one line per event
    debug.log         only with --debug/--trace, includes tool output
    structured.jsonl  INFO+ serialised records for later analysis
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "HEADLESS_USB_LOG_DIR",
        Path.home() / ".local" / "state" / "headless-usb-builder" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level: <8}</level> "
    "<cyan>[{extra[source]}]</cyan> {message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <8} "
    "[{extra[source]}:{extra[job_id]}] {message}"
)
DEBUG_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <8} "
    "[{extra[source]}:{extra[job_id]}] {extra[tags]} {message}"
)


def _should_log_progress(record) -> bool:
    """Drop records tagged as progress unless they are INFO or louder."""
    if "progress" not in record["extra"].get("tags", []):
        return True
    return record["level"].no >= logger.level("INFO").no


def _console_level(debug: bool, trace: bool) -> str:
    if trace:
        return "TRACE"
    return "DEBUG" if debug else "INFO"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """Replace all loguru sinks with the builder's stderr and file sinks.

    Args:
        debug: Show DEBUG records and write debug.log
        trace: Also show TRACE records, including every dd progress line
        log_dir: Where log files go (default ~/.local/state/headless-usb-builder/logs)
        file_logging: False keeps logging on stderr only
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "builder"})

    logger.add(
        sys.stderr,
        level=_console_level(debug, trace),
        format=CONSOLE_FORMAT,
        filter=None if trace else _should_log_progress,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )
    if not file_logging:
        return logger

    directory = Path(log_dir or DEFAULT_LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    # diagnose stays off everywhere: tracebacks would print the password hash
    rotating = {"compression": "zip", "diagnose": False}

    logger.add(
        directory / "operations.log",
        level="INFO",
        format=FILE_FORMAT,
        rotation="5 MB",
        retention="7 days",
        backtrace=False,
        **rotating,
    )
    if debug or trace:
        logger.add(
            directory / "debug.log",
            level="TRACE" if trace else "DEBUG",
            format=DEBUG_FILE_FORMAT,
            rotation="10 MB",
            retention="3 days",
            backtrace=True,
            **rotating,
        )
    logger.add(
        directory / "structured.jsonl",
        level="INFO",
        format="{message}",
        serialize=True,
        rotation="10 MB",
        retention="7 days",
        **rotating,
    )
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the global logger bound to whichever extras were given."""
    extras = {
        key: value
        for key, value in (("job_id", job_id), ("source", source))
        if value is not None
    }
    if tags is not None:
        extras["tags"] = list(tags)
    return logger.bind(**extras)


def _new_job_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, **details):
    """Log one pipeline stage: start, then success or failure with its duration.

    Extra keyword arguments are attached to every record logged inside the
    block. Exceptions are logged and re-raised unchanged.

    Example:
        with operation_context("provision", device="/dev/sdb") as log:
            log.debug("Querying free space")
    """
    job_id = _new_job_id(operation)
    title = operation.capitalize()
    log = get_logger(source=operation, job_id=job_id, tags=[operation])
    started = time.monotonic()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log.info(f"{title} started")
        try:
            yield log
        except Exception as error:
            log.error(
                "{} failed: {}",
                title,
                error,
                error_type=type(error).__name__,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            raise
        log.success(
            f"{title} completed",
            duration_seconds=round(time.monotonic() - started, 2),
        )


class LoggerFactory:
    """Bound loggers for each part of the pipeline."""

    @staticmethod
    def for_device() -> Logger:
        return get_logger(source="device", tags=["device", "storage"])

    @staticmethod
    def for_image(job_id: str | None = None) -> Logger:
        """Logger for one image write; each write gets its own job id."""
        return get_logger(
            job_id=job_id or _new_job_id("image"),
            source="image",
            tags=["image", "storage"],
        )

    @staticmethod
    def for_partition() -> Logger:
        return get_logger(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_manifest() -> Logger:
        return get_logger(source="manifest", tags=["manifest"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for preconditions, settings and the CLI itself."""
        return get_logger(source="system", tags=["system"])


class ThrottledLogger:
    """Emit at most one record per key every ``interval_seconds``.

    dd reports progress several times a second; the log only needs a line
    every few seconds.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self._last_emitted: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        self._emit("debug", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self._emit("info", key, message, **kwargs)

    def _emit(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.monotonic()
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.interval:
            return
        self._last_emitted[key] = now
        getattr(self.log, level)(message, **kwargs)
