"""Request authentication gate and middleware.

Every request to the agent must carry a timestamp header and an HMAC-SHA256
signature over the canonical payload (see ``cdxagent.common.hmac``). The gate
evaluates a fixed sequence of checks and returns a ``Decision``; the first
failing check names the deny reason, which is only ever written to the audit
log. Callers see one opaque 401 for every authentication failure and a 500
when the agent itself has no secret configured.
"""

from __future__ import annotations

import contextlib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from cdxagent.common.audit import (
    AuditSink,
    AuthFailureEvent,
    HashChainedAuditLog,
    LoggingAuditSink,
)
from cdxagent.common.errors import not_configured_response, unauthorized_response
from cdxagent.common.hmac import SignatureEngine, canonical_path
from cdxagent.common.http import client_address
from cdxagent.common.logging import get_logger
from cdxagent.common.metrics import record_auth_decision
from cdxagent.common.replay import DEFAULT_TOLERANCE_SECONDS, is_timestamp_valid
from cdxagent.common.settings import Settings

logger = get_logger(__name__)


class DenyReason(str, Enum):
    """Why the gate rejected a request. Internal only."""

    MISSING_HEADERS = "missing_headers"
    SECRET_NOT_CONFIGURED = "secret_not_configured"
    TIMESTAMP_OUT_OF_RANGE = "timestamp_out_of_range"
    SIGNATURE_MISMATCH = "signature_mismatch"

    @property
    def is_configuration_error(self) -> bool:
        return self is DenyReason.SECRET_NOT_CONFIGURED


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one request."""

    allowed: bool
    reason: DenyReason | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> Decision:
        return cls(allowed=False, reason=reason)


class SignedRequestView(Protocol):
    """The parts of a request the gate depends on."""

    @property
    def method(self) -> str: ...

    @property
    def path(self) -> str: ...

    @property
    def body(self) -> bytes: ...

    def header(self, name: str) -> str | None: ...


@dataclass(frozen=True)
class RequestView:
    """Read-only snapshot of an inbound request."""

    method: str
    path: str
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    remote_address: str | None = None

    def header(self, name: str) -> str | None:
        value = self.headers.get(name)
        if value is not None:
            return value
        lowered = name.lower()
        for key, candidate in self.headers.items():
            if key.lower() == lowered:
                return candidate
        return None

    @property
    def user_agent(self) -> str | None:
        return self.header("User-Agent")

    @classmethod
    async def from_request(cls, request: Request) -> RequestView:
        """Snapshot a Starlette request, reading its raw body."""
        return cls(
            method=request.method,
            path=request.url.path,
            body=await request.body(),
            headers=request.headers,
            remote_address=client_address(request),
        )


@dataclass(frozen=True)
class GateConfig:
    """Immutable gate configuration, built once and injected."""

    secret: str | bytes = field(default="", repr=False)
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS
    audit_enabled: bool = True
    timestamp_header: str = "X-CDX-Timestamp"
    signature_header: str = "X-CDX-Signature"

    @classmethod
    def from_settings(cls, settings: Settings) -> GateConfig:
        return cls(
            secret=settings.secret,
            tolerance_seconds=settings.timestamp_tolerance,
            audit_enabled=settings.log_failed_attempts,
            timestamp_header=settings.timestamp_header,
            signature_header=settings.signature_header,
        )


def logging_audit_sink() -> LoggingAuditSink:
    """Structlog sink that logs a missing secret at error level."""
    return LoggingAuditSink(
        configuration_reasons=frozenset({DenyReason.SECRET_NOT_CONFIGURED.value})
    )


def build_audit_sinks(settings: Settings) -> list[AuditSink]:
    """Structlog sink, plus the hash-chained file when configured."""
    sinks: list[AuditSink] = [logging_audit_sink()]
    if settings.audit_log_path:
        sinks.append(HashChainedAuditLog(settings.audit_log_path))
    return sinks


class AuthenticationGate:
    """Decides whether a request may reach an administrative handler.

    Holds no mutable state; one instance can serve concurrent requests.
    """

    def __init__(
        self,
        config: GateConfig,
        audit_sinks: Sequence[AuditSink] | None = None,
    ) -> None:
        self._config = config
        self._engine = SignatureEngine(config.secret)
        if audit_sinks is None:
            audit_sinks = (logging_audit_sink(),)
        self._audit_sinks = tuple(audit_sinks)

    def evaluate(self, request: SignedRequestView, now: int | None = None) -> Decision:
        """Run the checks in order and return the first failure, or Allow."""
        timestamp = request.header(self._config.timestamp_header)
        signature = request.header(self._config.signature_header)
        if not timestamp or not signature:
            return Decision.deny(DenyReason.MISSING_HEADERS)

        if not self._engine.has_secret:
            return Decision.deny(DenyReason.SECRET_NOT_CONFIGURED)

        if not is_timestamp_valid(timestamp, self._config.tolerance_seconds, now):
            return Decision.deny(DenyReason.TIMESTAMP_OUT_OF_RANGE)

        if not self._engine.verify_signature(
            signature,
            timestamp,
            request.method,
            canonical_path(request.path),
            request.body,
        ):
            return Decision.deny(DenyReason.SIGNATURE_MISMATCH)

        return Decision.allow()

    def authenticate(self, request: SignedRequestView, now: int | None = None) -> Decision:
        """Evaluate the request and count the outcome.

        Does no I/O. Denials are audited separately through ``audit_task``.
        """
        decision = self.evaluate(request, now)
        record_auth_decision(decision.allowed, decision.reason.value if decision.reason else None)
        return decision

    def audit_event(
        self,
        request: SignedRequestView,
        decision: Decision,
    ) -> AuthFailureEvent | None:
        """The event to audit for ``decision``, or None if nothing is recorded."""
        reason = decision.reason
        if decision.allowed or reason is None:
            return None
        if not (self._config.audit_enabled or reason.is_configuration_error):
            return None

        return AuthFailureEvent(
            reason=reason.value,
            remote_address=getattr(request, "remote_address", None),
            path=request.path,
            method=request.method,
            timestamp_header=request.header(self._config.timestamp_header),
            user_agent=request.header("User-Agent"),
        )

    def audit_task(self, request: SignedRequestView, decision: Decision) -> BackgroundTask | None:
        """Background task that records the denial after the response is sent.

        Sinks do blocking file I/O, so Starlette runs the task in its thread
        pool.
        """
        event = self.audit_event(request, decision)
        if event is None:
            return None
        return BackgroundTask(self.record_event, event)

    def record_event(self, event: AuthFailureEvent) -> None:
        """Hand ``event`` to every sink; a failing sink is logged and skipped."""
        for sink in self._audit_sinks:
            try:
                sink.record(event)
            except Exception as exc:  # audit never changes the decision
                with contextlib.suppress(Exception):
                    logger.warning(
                        "Audit sink failed",
                        sink=type(sink).__name__,
                        error=str(exc),
                    )


def deny_response(decision: Decision) -> JSONResponse:
    """Map a Deny decision to the response the caller sees."""
    if decision.reason is not None and decision.reason.is_configuration_error:
        return not_configured_response()
    return unauthorized_response()


class HmacAuthMiddleware(BaseHTTPMiddleware):
    """HMAC auth middleware guarding the administrative routes."""

    def __init__(
        self,
        app: ASGIApp,
        gate: AuthenticationGate,
        exempt_paths: Sequence[str] = (),
    ) -> None:
        super().__init__(app)
        self._gate = gate
        self._exempt_paths = set(exempt_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        view = await RequestView.from_request(request)
        decision = self._gate.authenticate(view)
        if not decision.allowed:
            response = deny_response(decision)
            response.background = self._gate.audit_task(view, decision)
            return response

        return await call_next(request)
