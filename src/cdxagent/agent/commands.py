"""Whitelisted command execution and agent self-update."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any

from cdxagent.common.logging import get_logger
from cdxagent.common.metrics import record_command_run

logger = get_logger(__name__)


class CommandNotAllowedError(Exception):
    """Requested command is not on the whitelist."""

    def __init__(self, command: str, allowed: list[str]) -> None:
        super().__init__(f"Command not allowed: {command}")
        self.command = command
        self.allowed = allowed


@dataclass
class CommandResult:
    """Outcome of one command execution."""

    command: str
    parameters: list[str] = field(default_factory=list)
    exit_code: int | None = None
    output: str = ""
    execution_time_ms: float = 0.0
    executed_at: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


async def execute(
    argv: list[str],
    timeout: float,
    cwd: str | Path | None = None,
) -> tuple[int | None, str, bool]:
    """
    Run ``argv`` without a shell.

    Returns:
        Tuple of (exit_code, combined_output, timed_out)
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=str(cwd) if cwd else None,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        stdout, _ = await process.communicate()
        return None, stdout.decode("utf-8", errors="replace").strip(), True

    return process.returncode, stdout.decode("utf-8", errors="replace").strip(), False


class CommandRunner:
    """Runs commands from a fixed whitelist."""

    def __init__(
        self,
        allowed_commands: dict[str, list[str]],
        timeout: float = 60.0,
        cwd: str | Path | None = None,
    ):
        self._allowed = dict(allowed_commands)
        self._timeout = timeout
        self._cwd = cwd

    @property
    def allowed_commands(self) -> list[str]:
        return sorted(self._allowed)

    async def run(self, command: str, parameters: list[str] | None = None) -> CommandResult:
        """
        Run a whitelisted command.

        Extra words after the command name and ``parameters`` are appended to
        the configured argv.

        Raises:
            CommandNotAllowedError: If the command name is not whitelisted
        """
        name, *extra = command.split()
        if name not in self._allowed:
            raise CommandNotAllowedError(name, self.allowed_commands)

        parameters = [str(p) for p in (parameters or [])]
        argv = [*self._allowed[name], *extra, *parameters]
        executed_at = datetime.now(timezone.utc).isoformat()

        start = time.perf_counter()
        try:
            exit_code, output, timed_out = await execute(argv, self._timeout, self._cwd)
        except OSError:
            record_command_run(name, "error", time.perf_counter() - start)
            raise
        elapsed = time.perf_counter() - start

        result = CommandResult(
            command=command,
            parameters=parameters,
            exit_code=exit_code,
            output=output,
            execution_time_ms=round(elapsed * 1000, 2),
            executed_at=executed_at,
            timed_out=timed_out,
        )
        outcome = "timeout" if timed_out else ("success" if result.success else "failed")
        record_command_run(name, outcome, elapsed)
        logger.info(
            "Command executed",
            command=name,
            exit_code=exit_code,
            timed_out=timed_out,
            execution_time_ms=result.execution_time_ms,
        )
        return result


def installed_version(package: str) -> str:
    """Installed version of ``package``, or ``not-installed``."""
    try:
        return metadata.version(package)
    except metadata.PackageNotFoundError:
        return "not-installed"


class SelfUpdater:
    """Upgrades the agent distribution in place."""

    def __init__(
        self,
        package: str,
        update_command: list[str],
        timeout: float = 120.0,
        cwd: str | Path | None = None,
    ):
        self._package = package
        self._command = list(update_command)
        self._timeout = timeout
        self._cwd = cwd

    @property
    def package(self) -> str:
        return self._package

    def current_version(self) -> str:
        return installed_version(self._package)

    async def update(self) -> dict[str, Any]:
        """Run the update command and report the version change."""
        before = self.current_version()
        exit_code, output, timed_out = await execute(self._command, self._timeout, self._cwd)
        after = self.current_version()

        logger.info(
            "Self-update finished",
            package=self._package,
            before_version=before,
            after_version=after,
            exit_code=exit_code,
            timed_out=timed_out,
        )
        return {
            "before_version": before,
            "after_version": after,
            "updated": before != after,
            "update_success": exit_code == 0 and not timed_out,
            "update_output": output,
        }
