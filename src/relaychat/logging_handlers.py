"""File logging for the relay: one file per process start, pruned by age."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, NamedTuple, Optional


class DateStampedFileHandler(logging.FileHandler):
    """Write to ``<directory>/<YYYY-MM-DD>/<prefix>_<YYYY-MM-DD_HH-MM-SS>_UTC.log``."""

    def __init__(
        self,
        directory: str | Path = "logs/relay",
        *,
        prefix: str = "relay",
        encoding: str | None = "utf-8",
        mode: str = "a",
        delay: bool = False,
        errors: Optional[str] = None,
        current_time: datetime | None = None,
    ) -> None:
        started = (current_time or datetime.now(timezone.utc)).astimezone(timezone.utc)
        day_dir = Path(directory).resolve() / f"{started:%Y-%m-%d}"
        day_dir.mkdir(parents=True, exist_ok=True)
        super().__init__(
            day_dir / f"{prefix}_{started:%Y-%m-%d_%H-%M-%S}_UTC.log",
            mode=mode,
            encoding=encoding,
            delay=delay,
            errors=errors,
        )


class CleanupReport(NamedTuple):
    deleted: int
    errors: int


def _prune_empty_dirs(root: Path) -> int:
    failures = 0
    # Deepest first so parents empty out before they are checked.
    for path in sorted(root.rglob("*"), key=lambda p: len(p.parts), reverse=True):
        if path.is_dir() and not any(path.iterdir()):
            try:
                path.rmdir()
            except OSError:
                failures += 1
    return failures


def cleanup_old_logs(
    log_directories: Iterable[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
    *,
    now: datetime | None = None,
) -> CleanupReport:
    """Delete ``*.log`` files last modified more than ``retention_hours`` ago.

    A retention of zero or less disables cleanup. Date folders left empty are
    removed as well.
    """

    if retention_hours <= 0:
        return CleanupReport(0, 0)

    cutoff = ((now or datetime.now(timezone.utc)) - timedelta(hours=retention_hours)).timestamp()
    deleted = errors = 0

    for directory in log_directories:
        root = Path(directory).resolve()
        if not root.is_dir():
            continue
        for log_file in root.rglob("*.log"):
            try:
                if log_file.stat().st_mtime >= cutoff:
                    continue
                log_file.unlink()
            except OSError as exc:
                errors += 1
                if logger is not None:
                    logger.warning("Could not remove old log %s: %s", log_file, exc)
                continue
            deleted += 1
        errors += _prune_empty_dirs(root)

    if logger is not None and deleted:
        logger.info("Removed %d expired log file(s) (%d error(s))", deleted, errors)
    return CleanupReport(deleted, errors)


__all__ = ["CleanupReport", "DateStampedFileHandler", "cleanup_old_logs"]
