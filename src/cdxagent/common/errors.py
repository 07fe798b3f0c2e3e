"""Shared error helpers and codes."""

from __future__ import annotations

from typing import Any

from starlette.responses import JSONResponse


class ErrorCode:
    UNAUTHORIZED = "unauthorized"
    AGENT_NOT_CONFIGURED = "agent_not_configured"
    FEATURE_DISABLED = "feature_disabled"
    INVALID_JSON = "invalid_json"
    MISSING_FIELD = "missing_field"
    COMMAND_NOT_ALLOWED = "command_not_allowed"
    OP_FAILED = "operation_failed"
    BAD_REQUEST = "bad_request"
    RATE_LIMITED = "rate_limited"


def success_response(message: str, data: dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse({"ok": True, "message": message, "data": data or {}})


def error_response(
    code: str,
    message: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "ok": False,
        "message": message,
        "error": code,
    }
    if details:
        payload["details"] = details
    return JSONResponse(payload, status_code=status_code)


def unauthorized_response() -> JSONResponse:
    """Uniform rejection for every authentication failure."""
    return error_response(ErrorCode.UNAUTHORIZED, "Unauthorized", 401)


def not_configured_response() -> JSONResponse:
    """Rejection when the agent has no shared secret."""
    return error_response(ErrorCode.AGENT_NOT_CONFIGURED, "Agent not configured", 500)


def feature_disabled_response(feature: str) -> JSONResponse:
    return error_response(ErrorCode.FEATURE_DISABLED, f"{feature} feature is disabled", 403)
