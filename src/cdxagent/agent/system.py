"""Host application state: health facts, git checkout, maintenance flag."""

from __future__ import annotations

import json
import platform
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cdxagent.common.logging import get_logger

logger = get_logger(__name__)


def read_git_info(base_path: str | Path) -> dict[str, Any] | None:
    """Branch and commit of the checkout at ``base_path``, without running git."""
    git_dir = Path(base_path) / ".git"
    if not git_dir.is_dir():
        return None

    branch: str | None = None
    commit: str | None = None

    head_file = git_dir / "HEAD"
    if head_file.is_file():
        head = head_file.read_text(encoding="utf-8").strip()
        if head.startswith("ref: refs/heads/"):
            branch = head[len("ref: refs/heads/"):]
        else:
            commit = head  # detached HEAD

    if branch and commit is None:
        ref_file = git_dir / "refs" / "heads" / branch
        if ref_file.is_file():
            commit = ref_file.read_text(encoding="utf-8").strip()
        else:
            commit = _read_packed_ref(git_dir, f"refs/heads/{branch}")

    return {
        "branch": branch,
        "commit": commit[:8] if commit else None,
        "commit_full": commit,
    }


def _read_packed_ref(git_dir: Path, ref: str) -> str | None:
    packed = git_dir / "packed-refs"
    if not packed.is_file():
        return None
    for line in packed.read_text(encoding="utf-8").splitlines():
        if line.startswith(("#", "^")):
            continue
        parts = line.split(" ", 1)
        if len(parts) == 2 and parts[1].strip() == ref:
            return parts[0]
    return None


def runtime_info() -> dict[str, Any]:
    now = datetime.now(timezone.utc).astimezone()
    return {
        "python_version": platform.python_version(),
        "platform": platform.platform(),
        "time": now.isoformat(),
        "timezone": now.tzname(),
    }


class MaintenanceMode:
    """Maintenance flag stored as a JSON file the host application checks."""

    def __init__(self, flag_path: str | Path):
        self._path = Path(flag_path)

    @property
    def path(self) -> Path:
        return self._path

    def is_active(self) -> bool:
        return self._path.exists()

    def enable(self, secret_message: str | None = None, retry: int = 60) -> bool:
        """
        Mark the application as down.

        Args:
            secret_message: Bypass token operators can use while down
            retry: Retry-After hint (seconds) for clients

        Returns:
            False if maintenance mode was already active
        """
        if self.is_active():
            return False

        payload: dict[str, Any] = {"time": int(time.time()), "retry": retry}
        if secret_message:
            payload["secret"] = secret_message

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload), encoding="utf-8")
        logger.info("Maintenance mode enabled", flag=str(self._path))
        return True

    def disable(self) -> bool:
        """Bring the application back up. False if it was already live."""
        if not self.is_active():
            return False
        self._path.unlink()
        logger.info("Maintenance mode disabled", flag=str(self._path))
        return True
