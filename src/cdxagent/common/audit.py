"""Audit sinks for rejected authentication attempts."""

from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Protocol

from cdxagent.common.http import get_request_id
from cdxagent.common.logging import get_logger

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthFailureEvent:
    """Structured record of a denied request.

    Carries no secret and no signature, computed or supplied.
    """

    reason: str
    remote_address: str | None
    path: str
    method: str
    timestamp_header: str | None
    user_agent: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditSink(Protocol):
    """Receives authentication failure events."""

    def record(self, event: AuthFailureEvent) -> None: ...


class LoggingAuditSink:
    """Emit failure events through structlog."""

    def __init__(self, configuration_reasons: frozenset[str] = frozenset()) -> None:
        self._configuration_reasons = configuration_reasons

    def record(self, event: AuthFailureEvent) -> None:
        if event.reason in self._configuration_reasons:
            logger.error("Agent secret not configured", **event.to_dict())
        else:
            logger.warning("Authentication failed", **event.to_dict())


class HashChainedAuditLog:
    """Hash-chained JSONL audit log for tamper evidence."""

    def __init__(self, log_path: str):
        """
        Initialize audit log.

        Args:
            log_path: Path to JSONL audit log file
        """
        self._log_path = Path(log_path)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._prev_hash = ""
        self._lock_supported = fcntl is not None

        if self._log_path.exists():
            try:
                with open(self._log_path, "rb") as f:
                    self._prev_hash = self._read_last_hash(f)
            except OSError:
                self._prev_hash = ""

    @property
    def path(self) -> Path:
        return self._log_path

    def _compute_hash(self, data: dict[str, Any]) -> str:
        content = json.dumps(data, sort_keys=True)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _acquire_lock(self, file_obj) -> None:
        if self._lock_supported:
            fcntl.flock(file_obj.fileno(), fcntl.LOCK_EX)

    def _release_lock(self, file_obj) -> None:
        if self._lock_supported:
            fcntl.flock(file_obj.fileno(), fcntl.LOCK_UN)

    def _read_last_hash(self, file_obj) -> str:
        file_obj.seek(0)
        last_line = b""
        for line in file_obj:
            if line.strip():
                last_line = line
        if not last_line:
            return ""
        try:
            entry = json.loads(last_line.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ""
        return entry.get("hash", "")

    def record(self, event: AuthFailureEvent) -> None:
        self.log("auth_failed", **event.to_dict())

    def log(self, event: str, **fields: Any) -> None:
        """Append one hash-chained entry."""
        entry: dict[str, Any] = {
            "ts": time.time(),
            "event": event,
        }
        entry.update(fields)

        request_id = get_request_id()
        if request_id and "request_id" not in entry:
            entry["request_id"] = request_id

        with open(self._log_path, "a+b") as f:
            self._acquire_lock(f)
            try:
                entry["prev_hash"] = self._read_last_hash(f) or self._prev_hash
                entry["hash"] = self._compute_hash(entry)

                f.seek(0, os.SEEK_END)
                f.write((json.dumps(entry) + "\n").encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            finally:
                self._release_lock(f)

        self._prev_hash = entry["hash"]

    def verify_chain(self) -> tuple[bool, list[int]]:
        """
        Verify the hash chain integrity.

        Returns:
            Tuple of (is_valid, list_of_broken_line_numbers)
        """
        broken = []
        prev_hash = ""

        if not self._log_path.exists():
            return True, []

        with open(self._log_path, encoding="utf-8") as f:
            for i, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    broken.append(i)
                    continue

                if entry.get("prev_hash") != prev_hash:
                    broken.append(i)

                stored_hash = entry.pop("hash", "")
                if stored_hash != self._compute_hash(entry):
                    broken.append(i)
                prev_hash = stored_hash

        return len(broken) == 0, sorted(set(broken))
