"""Configuration management using pydantic-settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_COMMANDS: dict[str, list[str]] = {
    "pip:check": ["python", "-m", "pip", "check"],
    "pip:list": ["python", "-m", "pip", "list", "--format", "json"],
    "python:version": ["python", "--version"],
    "disk:usage": ["df", "-h"],
    "uptime": ["uptime"],
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CDX_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Auth
    secret: str = Field(
        default="",
        description="Shared secret used to sign control-center requests (empty = deny everything)",
    )
    timestamp_tolerance: int = Field(
        default=60,
        description="Max difference (seconds) between request timestamp and server time",
    )
    log_failed_attempts: bool = Field(
        default=True,
        description="Log rejected authentication attempts",
    )
    timestamp_header: str = Field(
        default="X-CDX-Timestamp",
        description="Header carrying the request timestamp",
    )
    signature_header: str = Field(
        default="X-CDX-Signature",
        description="Header carrying the HMAC signature",
    )
    auth_exempt_paths: tuple[str, ...] = Field(
        default=("/metrics",),
        description="Paths served without HMAC authentication",
    )
    audit_log_path: str | None = Field(
        default=None,
        description="Hash-chained JSONL audit log for rejected requests (optional)",
    )

    # Routing
    route_prefix: str = Field(
        default="cdx-agent",
        description="URL prefix for all agent routes",
    )
    rate_limit_rpm: float = Field(
        default=60.0,
        description="Rate limit in requests per minute",
    )

    # Features
    feature_health: bool = Field(default=True, description="Enable /health")
    feature_maintenance: bool = Field(default=True, description="Enable /maintenance")
    feature_cache_clear: bool = Field(default=True, description="Enable /clear-caches")
    feature_git_info: bool = Field(default=True, description="Include git info in /health")
    feature_logs: bool = Field(default=True, description="Enable /logs")
    feature_commands: bool = Field(default=True, description="Enable /commands")
    feature_self_update: bool = Field(default=True, description="Enable /update")
    feature_backup: bool = Field(default=True, description="Enable /backup")

    # Commands
    allowed_commands: dict[str, list[str]] = Field(
        default_factory=lambda: dict(DEFAULT_ALLOWED_COMMANDS),
        description="Whitelisted commands (JSON mapping of name to argv)",
    )
    command_timeout: float = Field(
        default=60.0,
        description="Max seconds a whitelisted command may run",
    )

    # Application
    app_name: str = Field(
        default="cdx-agent",
        description="Application name reported by /health",
    )
    app_env: str = Field(
        default="production",
        description="Application environment reported by /health",
    )
    base_path: str = Field(
        default=".",
        description="Application root (git info, relative paths)",
    )
    maintenance_file: str = Field(
        default="storage/maintenance.json",
        description="Flag file marking the application as down for maintenance",
    )
    cache_paths: tuple[str, ...] = Field(
        default=(),
        description="Cache directories emptied by /clear-caches",
    )
    backup_paths: tuple[str, ...] = Field(
        default=("storage/backups", "storage/app/backups", "backups"),
        description="Directories scanned by /backup (relative to base_path)",
    )
    package_name: str = Field(
        default="cdx-agent",
        description="Distribution name reported by /version",
    )
    update_command: list[str] = Field(
        default_factory=lambda: ["python", "-m", "pip", "install", "--upgrade", "cdx-agent"],
        description="Command run by /update",
    )
    update_timeout: float = Field(
        default=120.0,
        description="Max seconds the update command may run",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level",
    )
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON",
    )
    log_file: str | None = Field(
        default=None,
        description="JSON-lines log file (also read by /logs)",
    )

    # Server
    agent_host: str = Field(
        default="0.0.0.0",
        description="Host for the agent HTTP server",
    )
    agent_port: int = Field(
        default=8090,
        description="Port for the agent HTTP server",
    )

    @property
    def normalized_prefix(self) -> str:
        """Route prefix with a single leading slash and no trailing slash."""
        prefix = self.route_prefix.strip("/")
        return f"/{prefix}" if prefix else ""


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
