"""Parsing of the optional ``logging_settings.conf`` file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

LEVELS: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}

DEFAULT_RETENTION_HOURS = 48


@dataclass(frozen=True)
class LoggingSettings:
    """``None`` levels mean the destination is switched off."""

    terminal_level: int | None = logging.INFO
    relay_level: int | None = logging.INFO
    retention_hours: int = DEFAULT_RETENTION_HOURS


def _parse_retention(value: str) -> int:
    try:
        return max(0, int(value))
    except ValueError:
        return DEFAULT_RETENTION_HOURS


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Read ``key = value`` lines from ``path``.

    Keys: ``terminal`` (console level), ``relay`` (level of the ``relaychat``
    loggers) and ``retention_hours``. Comments, unknown keys and lines
    without ``=`` are ignored; unknown level names mean ``info``.
    """

    if not path.exists():
        return LoggingSettings()

    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        key = key.strip().lower()
        if not sep or not key or key.startswith("#"):
            continue
        values[key] = value.strip()

    def level(key: str) -> int | None:
        if key not in values:
            return logging.INFO
        return LEVELS.get(values[key].lower(), logging.INFO)

    return LoggingSettings(
        terminal_level=level("terminal"),
        relay_level=level("relay"),
        retention_hours=_parse_retention(values.get("retention_hours", str(DEFAULT_RETENTION_HOURS))),
    )


__all__ = ["LoggingSettings", "parse_logging_settings"]
