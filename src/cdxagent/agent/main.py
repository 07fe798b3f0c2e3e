"""Agent HTTP server - administrative endpoints behind the HMAC gate."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
import uvicorn

from cdxagent import __version__
from cdxagent.agent.backups import BackupMonitor
from cdxagent.agent.caches import CacheRegistry
from cdxagent.agent.commands import CommandNotAllowedError, CommandRunner, SelfUpdater
from cdxagent.agent.logs import LogReader
from cdxagent.agent.system import MaintenanceMode, read_git_info, runtime_info
from cdxagent.common.auth import (
    AuthenticationGate,
    GateConfig,
    HmacAuthMiddleware,
    build_audit_sinks,
)
from cdxagent.common.errors import (
    ErrorCode,
    error_response,
    feature_disabled_response,
    success_response,
)
from cdxagent.common.http import RequestIdMiddleware
from cdxagent.common.logging import get_logger, setup_logging
from cdxagent.common.metrics import MetricsMiddleware, metrics_endpoint
from cdxagent.common.ratelimit import RateLimitMiddleware
from cdxagent.common.settings import Settings, get_settings

logger = get_logger(__name__)

_TRUE_VALUES = {"1", "true", "on", "yes"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return False


async def _json_body(request: Request) -> dict[str, Any] | None:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


class AgentServer:
    """Handlers for the administrative routes."""

    def __init__(
        self,
        settings: Settings,
        caches: CacheRegistry | None = None,
        runner: CommandRunner | None = None,
        updater: SelfUpdater | None = None,
        backups: BackupMonitor | None = None,
    ):
        self._settings = settings
        base_path = Path(settings.base_path)
        self._base_path = base_path
        self._maintenance = MaintenanceMode(base_path / settings.maintenance_file)
        self._caches = caches or CacheRegistry.from_paths(
            [str(base_path / p) for p in settings.cache_paths]
        )
        self._logs = LogReader(settings.log_file)
        self._backups = backups or BackupMonitor(
            [base_path / p for p in settings.backup_paths]
        )
        self._runner = runner or CommandRunner(
            settings.allowed_commands,
            timeout=settings.command_timeout,
            cwd=base_path,
        )
        self._updater = updater or SelfUpdater(
            settings.package_name,
            settings.update_command,
            timeout=settings.update_timeout,
            cwd=base_path,
        )

    @property
    def caches(self) -> CacheRegistry:
        return self._caches

    @property
    def maintenance(self) -> MaintenanceMode:
        return self._maintenance

    async def startup(self) -> None:
        logger.info(
            "Starting cdx-agent",
            prefix=self._settings.normalized_prefix,
            secret_configured=bool(self._settings.secret),
        )
        if not self._settings.secret:
            logger.error("Agent secret not configured; all requests will be rejected")

    async def shutdown(self) -> None:
        logger.info("cdx-agent stopped")

    async def handle_health(self, request: Request) -> JSONResponse:
        """GET /health - status and system information."""
        if not self._settings.feature_health:
            return feature_disabled_response("Health")

        data: dict[str, Any] = {
            "app_name": self._settings.app_name,
            "app_env": self._settings.app_env,
            "agent_version": __version__,
            **runtime_info(),
            "maintenance": self._maintenance.is_active(),
        }
        if self._settings.feature_git_info:
            try:
                data["git"] = read_git_info(self._base_path)
            except OSError as exc:
                logger.warning("Failed to read git info", error=str(exc))
                data["git"] = {"error": "Unable to retrieve git info"}

        return success_response("Health check successful", data)

    async def handle_maintenance(self, request: Request) -> JSONResponse:
        """POST /maintenance - toggle maintenance mode."""
        if not self._settings.feature_maintenance:
            return feature_disabled_response("Maintenance")

        body = await _json_body(request)
        if body is None:
            return error_response(ErrorCode.INVALID_JSON, "Invalid JSON", 400)

        enabled = _as_bool(body.get("enabled"))
        secret_message = body.get("secret_message") or None

        try:
            if enabled:
                changed = self._maintenance.enable(secret_message=secret_message)
                message = (
                    "Maintenance mode enabled"
                    if changed
                    else "Application is already in maintenance mode"
                )
            else:
                changed = self._maintenance.disable()
                message = "Maintenance mode disabled" if changed else "Application is already live"
        except OSError as exc:
            logger.error("Failed to toggle maintenance mode", error=str(exc))
            return error_response(ErrorCode.OP_FAILED, "Failed to toggle maintenance mode", 500)

        return success_response(message, {"maintenance": enabled})

    async def handle_clear_caches(self, request: Request) -> JSONResponse:
        """POST /clear-caches - run every registered cache clearer."""
        if not self._settings.feature_cache_clear:
            return feature_disabled_response("Cache clear")

        results = await self._caches.clear_all()
        has_errors = any(value.startswith("error:") for value in results.values())
        message = (
            "Caches cleared with some errors" if has_errors else "All caches cleared successfully"
        )
        return success_response(message, {"results": results})

    async def handle_logs(self, request: Request) -> JSONResponse:
        """GET /logs - recent log entries."""
        if not self._settings.feature_logs:
            return feature_disabled_response("Logs")

        try:
            lines = int(request.query_params.get("lines", "100"))
        except ValueError:
            return error_response(ErrorCode.BAD_REQUEST, "lines must be an integer", 400)
        level = request.query_params.get("level") or None

        try:
            logs = self._logs.read(lines=lines, level=level)
        except OSError as exc:
            logger.error("Failed to read logs", error=str(exc))
            return error_response(ErrorCode.OP_FAILED, "Failed to get logs", 500)

        return success_response("Logs retrieved", {"logs": logs, "count": len(logs)})

    async def handle_backup(self, request: Request) -> JSONResponse:
        """GET /backup - backup inventory and freshness."""
        if not self._settings.feature_backup:
            return feature_disabled_response("Backup")

        try:
            status = self._backups.status()
        except OSError as exc:
            logger.error("Failed to read backups", error=str(exc))
            return error_response(ErrorCode.OP_FAILED, "Failed to get backup status", 500)

        return success_response("Backup status", status)

    async def handle_run_command(self, request: Request) -> JSONResponse:
        """POST /commands - run a whitelisted command."""
        if not self._settings.feature_commands:
            return feature_disabled_response("Commands")

        body = await _json_body(request)
        if body is None:
            return error_response(ErrorCode.INVALID_JSON, "Invalid JSON", 400)

        command = str(body.get("command") or "").strip()
        if not command:
            return error_response(ErrorCode.MISSING_FIELD, "Command is required", 400)

        parameters = body.get("parameters") or []
        if not isinstance(parameters, list):
            return error_response(ErrorCode.BAD_REQUEST, "parameters must be a list", 400)

        try:
            result = await self._runner.run(command, parameters)
        except CommandNotAllowedError as exc:
            return error_response(
                ErrorCode.COMMAND_NOT_ALLOWED,
                "Command not allowed",
                403,
                details={"allowed_commands": exc.allowed},
            )
        except OSError as exc:
            logger.error("Command failed to start", command=command, error=str(exc))
            return error_response(ErrorCode.OP_FAILED, "Command failed to start", 500)

        message = "Command executed" if result.success else "Command failed"
        return success_response(message, result.to_dict())

    async def handle_list_commands(self, request: Request) -> JSONResponse:
        """GET /commands/list - the command whitelist."""
        if not self._settings.feature_commands:
            return feature_disabled_response("Commands")

        allowed = self._runner.allowed_commands
        return success_response(
            "Allowed commands",
            {"allowed_commands": allowed, "total": len(allowed)},
        )

    async def handle_version(self, request: Request) -> JSONResponse:
        """GET /version - installed agent version."""
        return success_response(
            "Agent version",
            {
                "current_version": self._updater.current_version(),
                "package": self._updater.package,
            },
        )

    async def handle_update(self, request: Request) -> JSONResponse:
        """POST /update - upgrade the agent package."""
        if not self._settings.feature_self_update:
            return feature_disabled_response("Self-update")

        before = self._updater.current_version()
        try:
            result = await self._updater.update()
        except OSError as exc:
            logger.error("Self-update failed", error=str(exc))
            return error_response(
                ErrorCode.OP_FAILED,
                "Update failed",
                500,
                details={"before_version": before},
            )

        caches = await self._caches.clear_all()
        result["caches_cleared"] = caches
        return success_response("Update finished", result)


def create_app(
    settings: Settings | None = None,
    server: AgentServer | None = None,
    gate: AuthenticationGate | None = None,
) -> Starlette:
    """Create the Starlette application."""
    settings = settings or get_settings()
    server = server or AgentServer(settings)
    gate = gate or AuthenticationGate(
        GateConfig.from_settings(settings),
        audit_sinks=build_audit_sinks(settings),
    )
    prefix = settings.normalized_prefix

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await server.startup()
        yield
        await server.shutdown()

    routes = [
        Route(f"{prefix}/health", server.handle_health, methods=["GET"]),
        Route(f"{prefix}/maintenance", server.handle_maintenance, methods=["POST"]),
        Route(f"{prefix}/clear-caches", server.handle_clear_caches, methods=["POST"]),
        Route(f"{prefix}/logs", server.handle_logs, methods=["GET"]),
        Route(f"{prefix}/commands", server.handle_run_command, methods=["POST"]),
        Route(f"{prefix}/commands/list", server.handle_list_commands, methods=["GET"]),
        Route(f"{prefix}/version", server.handle_version, methods=["GET"]),
        Route(f"{prefix}/update", server.handle_update, methods=["POST"]),
        Route(f"{prefix}/backup", server.handle_backup, methods=["GET"]),
        Route("/metrics", metrics_endpoint, methods=["GET"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)

    # Added innermost first: the gate runs after rate limiting and metrics.
    app.add_middleware(
        HmacAuthMiddleware,
        gate=gate,
        exempt_paths=settings.auth_exempt_paths,
    )
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_minute=settings.rate_limit_rpm,
        exclude_paths=list(settings.auth_exempt_paths),
    )
    app.add_middleware(
        MetricsMiddleware,
        exclude_paths=["/metrics"],
    )
    app.add_middleware(RequestIdMiddleware)

    return app


def main():
    """Entry point for the agent server."""
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.log_json, log_file=settings.log_file)
    app = create_app(settings)

    uvicorn.run(
        app,
        host=settings.agent_host,
        port=settings.agent_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
