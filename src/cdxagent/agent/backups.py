"""Backup status: scan backup directories and judge how fresh they are."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

BACKUP_EXTENSIONS = (".zip", ".sql", ".gz", ".tar")
MAX_LISTED_BACKUPS = 20
WARNING_AFTER_DAYS = 3
CRITICAL_AFTER_DAYS = 7

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(size: int) -> str:
    """Human readable size, e.g. ``1.5 KB``."""
    size = max(size, 0)
    power = 0
    while power < len(_SIZE_UNITS) - 1 and size >= 1024 ** (power + 1):
        power += 1
    value = f"{size / 1024**power:.2f}".rstrip("0").rstrip(".")
    return f"{value} {_SIZE_UNITS[power]}"


@dataclass(frozen=True)
class BackupFile:
    """One backup archive found on disk."""

    path: Path
    size: int
    modified_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.path.name,
            "path": str(self.path),
            "disk": "local",
            "size": self.size,
            "size_human": format_bytes(self.size),
            "date": self.modified_at.isoformat(),
        }


class BackupMonitor:
    """Reports on backup archives kept in a set of directories."""

    def __init__(
        self,
        directories: list[str | Path],
        extensions: tuple[str, ...] = BACKUP_EXTENSIONS,
    ):
        self._directories = [Path(d) for d in directories]
        self._extensions = extensions

    def scan(self) -> list[BackupFile]:
        """All backups, newest first. Subdirectories are not searched."""
        backups = []
        for directory in self._directories:
            if not directory.is_dir():
                continue
            for entry in directory.iterdir():
                if not entry.is_file() or entry.suffix.lower() not in self._extensions:
                    continue
                stat = entry.stat()
                backups.append(
                    BackupFile(
                        path=entry,
                        size=stat.st_size,
                        modified_at=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
                    )
                )
        return sorted(backups, key=lambda b: b.modified_at, reverse=True)

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Summarize backups with a health verdict.

        Health is ``warning`` when there are no backups or the newest one is
        more than 3 days old, and ``critical`` past 7 days.
        """
        now = now or datetime.now(timezone.utc)
        backups = self.scan()
        total_size = sum(b.size for b in backups)
        last = backups[0] if backups else None
        oldest = backups[-1] if backups else None

        health_status = "healthy"
        health_message = "Backups are up to date"
        if last is None:
            health_status = "warning"
            health_message = "No backups found"
        else:
            age_days = (now - last.modified_at).days
            if age_days > CRITICAL_AFTER_DAYS:
                health_status = "critical"
                health_message = f"Last backup is {age_days} days old"
            elif age_days > WARNING_AFTER_DAYS:
                health_status = "warning"
                health_message = f"Last backup is {age_days} days old"

        return {
            "health_status": health_status,
            "health_message": health_message,
            "stats": {
                "total_backups": len(backups),
                "total_size": total_size,
                "total_size_human": format_bytes(total_size),
                "last_backup": last.to_dict() if last else None,
                "oldest_backup": oldest.to_dict() if oldest else None,
            },
            "backups": [b.to_dict() for b in backups[:MAX_LISTED_BACKUPS]],
            "checked_at": now.isoformat(),
        }
