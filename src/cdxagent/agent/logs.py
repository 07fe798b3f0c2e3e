"""Tail and parse the agent's JSON-lines log file."""

from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Any

MAX_MESSAGE_LENGTH = 500
MAX_LINES = 1000

_KNOWN_KEYS = ("timestamp", "level", "event", "logger")


def _truncate(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[:MAX_MESSAGE_LENGTH] + "..."


def parse_log_line(line: str) -> dict[str, Any] | None:
    """Parse one log line into an entry; blank lines yield None."""
    line = line.strip()
    if not line:
        return None

    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        record = None

    if not isinstance(record, dict):
        return {
            "timestamp": None,
            "level": "unknown",
            "logger": None,
            "message": _truncate(line),
            "context": {},
        }

    return {
        "timestamp": record.get("timestamp"),
        "level": str(record.get("level", "unknown")).lower(),
        "logger": record.get("logger"),
        "message": _truncate(str(record.get("event", ""))),
        "context": {k: v for k, v in record.items() if k not in _KNOWN_KEYS},
    }


class LogReader:
    """Reads the most recent entries of a log file."""

    def __init__(self, log_path: str | Path | None):
        self._path = Path(log_path) if log_path else None

    def read(self, lines: int = 100, level: str | None = None) -> list[dict[str, Any]]:
        """
        Return up to ``lines`` recent entries, oldest first.

        Args:
            lines: Number of entries to return (capped at MAX_LINES)
            level: Only entries with this level (case-insensitive)
        """
        if self._path is None or not self._path.is_file():
            return []

        lines = max(1, min(lines, MAX_LINES))
        # Read extra raw lines so filtering by level still fills the window.
        window = lines * 3 if level else lines
        with open(self._path, encoding="utf-8", errors="replace") as f:
            raw_lines = deque(f, maxlen=window)

        entries = [entry for entry in map(parse_log_line, raw_lines) if entry is not None]
        if level:
            wanted = level.lower()
            entries = [entry for entry in entries if entry["level"] == wanted]

        return entries[-lines:]
