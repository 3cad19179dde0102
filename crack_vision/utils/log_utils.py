"""Logging for the crack comparison pipeline.

Every event line starts with a bracketed event name, then the run context,
then a short message:

    [run.completed] run-1234abcd > base:a.jpg | inliers: 42/60 | 3 regions | 1.2s, 310mb

Two output styles: coloured single lines for a terminal ("local") and one
JSON object per line for log collectors ("json").
"""

import contextlib
import json
import logging
import os
import sys
import time
import warnings
from collections.abc import Generator

import psutil
from PIL import Image

# Largest photograph Pillow may open (about 12,000 x 12,000 px)
MAX_DECODE_PIXELS = 150_000_000

QUIET_LOGGERS = ("httpx", "httpcore", "PIL", "asyncio", "multiprocessing")


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "severity": record.levelname,
            "logger": record.name,
            "process": record.processName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class LocalDevFormatter(logging.Formatter):
    """Short coloured lines: `HH:MM:SS LEVL message`."""

    COLORS = {
        logging.DEBUG: "\033[2;37m",
        logging.INFO: "\033[0;32m",
        logging.WARNING: "\033[0;33m",
        logging.ERROR: "\033[1;31m",
        logging.CRITICAL: "\033[1;35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        prefix = f"{self.formatTime(record, '%H:%M:%S')} {record.levelname[:4]:<4}"
        line = f"{self.COLORS.get(record.levelno, '')}{prefix}{self.RESET} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def parse_log_level(level_str: str) -> int:
    """Map a level name (any case) to its logging constant; unknown names give INFO."""
    level = logging.getLevelName(str(level_str).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | int = logging.INFO, log_format: str = "local") -> None:
    """
    Install a single stdout handler on the root logger.

    Called once per process: by the CLI at start-up and by each worker
    process after it receives its request.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or logging constant
        log_format: "local" for coloured lines, "json" for one object per line
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if log_format == "json" else LocalDevFormatter())

    if isinstance(level, str):
        level = parse_log_level(level)
    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    Image.MAX_IMAGE_PIXELS = MAX_DECODE_PIXELS
    warnings.simplefilter("ignore", Image.DecompressionBombWarning)


def format_size(size_bytes: int) -> str:
    """Byte count as "50b", "1.5kb" or "2.5mb"."""
    for unit, scale in (("mb", 1024 * 1024), ("kb", 1024)):
        if size_bytes >= scale:
            return f"{size_bytes / scale:.1f}{unit}"
    return f"{size_bytes}b"


def format_duration(duration_ms: int) -> str:
    """Milliseconds as "250ms" or "15.2s"."""
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    return f"{duration_ms / 1000:.1f}s"


def _short_ref(source_ref: str) -> str:
    """Last path segment of an image reference, query string dropped."""
    ref = str(source_ref).split("?", 1)[0].rstrip("/")
    name = ref.rsplit("/", 1)[-1] if "/" in ref else ref
    return name or ref


def format_context(
    run_id: str | None = None,
    baseline_ref: str | None = None,
    current_ref: str | None = None,
) -> str:
    """Format run context.

    Args:
        run_id: Run identifier (string or UUID object)
        baseline_ref: Baseline image URL or path
        current_ref: Current image URL or path

    Returns:
        Formatted string (e.g., "run-1234abcd > base:a.jpg > cur:b.jpg")
    """
    parts = []
    if run_id:
        parts.append(f"run-{str(run_id)[:8]}")
    if baseline_ref:
        parts.append(f"base:{_short_ref(baseline_ref)}")
    if current_ref:
        parts.append(f"cur:{_short_ref(current_ref)}")
    return " > ".join(parts)


def get_memory_mb() -> float | None:
    """Resident memory of this process in MB, or None if it cannot be read."""
    try:
        return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
    except psutil.Error:
        return None


@contextlib.contextmanager
def log_phase(
    logger: logging.Logger,
    phase_name: str,
    **context_kwargs,
) -> Generator[None, None, None]:
    """Time a block and log its start and end at DEBUG level.

    Usage:
        with log_phase(logger, "Matching features", run_id=run_id):
            matches = matcher.match(current_kp, baseline_kp)

    Output:
        Matching features... (run-1234abcd)
        Matching features done (120ms)
    """
    context = format_context(**context_kwargs)
    logger.debug(f"{phase_name}..." + (f" ({context})" if context else ""))

    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.debug(f"{phase_name} done ({format_duration(elapsed_ms)})")


def log_run_started(
    logger: logging.Logger,
    priority: str,
    run_id: str | None = None,
    baseline_ref: str | None = None,
    current_ref: str | None = None,
) -> float:
    """Log run started and return start time.

    Args:
        logger: Logger instance
        priority: Scheduling priority (background, foreground)
        run_id: Run identifier
        baseline_ref: Baseline image reference
        current_ref: Current image reference

    Returns:
        Start time (from time.time()) for duration calculation
    """
    context = format_context(run_id=run_id, baseline_ref=baseline_ref, current_ref=current_ref)
    context_str = f" | {context}" if context else ""
    logger.info(f"[run.started] {priority}{context_str}")

    return time.time()


def log_run_completed(
    logger: logging.Logger,
    start_time: float,
    run_id: str | None = None,
    **metrics,
) -> None:
    """Log a finished comparison with its alignment metrics.

    Recognised metrics: used_fallback, inlier_count, match_count,
    changed_regions, width, height. Missing ones are left out of the line.
    """
    fields = []
    if metrics.get("used_fallback"):
        fields.append("fallback")
    inliers, matches = metrics.get("inlier_count"), metrics.get("match_count")
    if inliers is not None and matches is not None:
        fields.append(f"inliers: {inliers}/{matches}")
    if metrics.get("changed_regions") is not None:
        fields.append(f"{metrics['changed_regions']} regions")
    if metrics.get("width") and metrics.get("height"):
        fields.append(f"{metrics['width']}x{metrics['height']}")

    elapsed = format_duration(int((time.time() - start_time) * 1000))
    memory_mb = get_memory_mb()
    fields.append(f"{elapsed}, {memory_mb:.0f}mb" if memory_mb is not None else elapsed)

    context = format_context(run_id=run_id)
    head = f"[run.completed] {context}" if context else "[run.completed]"
    logger.info(f"{head} | {' | '.join(fields)}")


def log_run_fallback(
    logger: logging.Logger,
    reason: str,
    run_id: str | None = None,
) -> None:
    """Log that alignment was skipped and a plain resize is compared.

    Args:
        logger: Logger instance
        reason: Why the homography was absent
        run_id: Run identifier
    """
    context = format_context(run_id=run_id)
    context_str = f" | {context}" if context else ""
    logger.warning(f"[run.fallback] {reason}{context_str}")


def log_run_failed(
    logger: logging.Logger,
    error: BaseException,
    run_id: str | None = None,
) -> None:
    """Log terminal run failure.

    Args:
        logger: Logger instance
        error: Exception that caused failure
        run_id: Run identifier
    """
    context = format_context(run_id=run_id)
    logger.error(f"[run.failed] {context}" if context else "[run.failed]")
    logger.error(f"  → {type(error).__name__}: {error}")


def log_run_aborted(logger: logging.Logger, run_id: str | None = None) -> None:
    """Log run aborted by the caller."""
    context = format_context(run_id=run_id)
    logger.info(f"[run.aborted] {context}" if context else "[run.aborted]")


def log_run_coalesced(logger: logging.Logger, run_id: str | None = None) -> None:
    """Log a debounced run replaced by a newer submission."""
    context = format_context(run_id=run_id)
    logger.debug(f"[run.coalesced] {context}" if context else "[run.coalesced]")


def log_run_rejected(logger: logging.Logger, reason: str) -> None:
    """Log a submission that was refused.

    Args:
        logger: Logger instance
        reason: Why the submission was refused
    """
    logger.warning(f"[run.rejected] {reason}")


def log_image_loaded(
    logger: logging.Logger,
    source_ref: str,
    width: int,
    height: int,
    size_bytes: int | None = None,
    duration_ms: int | None = None,
) -> None:
    """Log image fetch and decode.

    Args:
        logger: Logger instance
        source_ref: Image URL or path
        width: Decoded width in pixels
        height: Decoded height in pixels
        size_bytes: Encoded size in bytes
        duration_ms: Fetch and decode duration in milliseconds
    """
    details = [f"{width}x{height}"]
    if size_bytes is not None:
        details.append(format_size(size_bytes))
    if duration_ms is not None:
        details.append(format_duration(duration_ms))

    logger.info(f"[image.loaded] {_short_ref(source_ref)} ({', '.join(details)})")


def log_worker_spawned(logger: logging.Logger, pid: int | None, start_method: str) -> None:
    """Log worker process start.

    Args:
        logger: Logger instance
        pid: Worker process id
        start_method: multiprocessing start method
    """
    logger.debug(f"[worker.spawned] pid {pid} ({start_method})")


def log_worker_terminated(
    logger: logging.Logger,
    pid: int | None,
    exitcode: int | None,
    reason: str,
) -> None:
    """Log worker process teardown.

    Args:
        logger: Logger instance
        pid: Worker process id
        exitcode: Process exit code (None if still unknown)
        reason: Why the worker was torn down (completed, aborted, timeout, ...)
    """
    logger.debug(f"[worker.terminated] pid {pid} exit {exitcode} ({reason})")


def log_status_updated(
    logger: logging.Logger,
    old_status: str | None = None,
    new_status: str | None = None,
    message: str | None = None,
) -> None:
    """Log pipeline state transition.

    Args:
        logger: Logger instance
        old_status: Previous state
        new_status: New state
        message: Human-readable progress string
    """
    suffix = f" ({message})" if message else ""
    if old_status and new_status:
        logger.debug(f"[status.updated] {old_status} → {new_status}{suffix}")
    elif new_status:
        logger.debug(f"[status.updated] → {new_status}{suffix}")
    else:
        logger.debug(f"[status.updated]{suffix}")
