"""Tests for the authentication gate decision pipeline."""

import time
from unittest.mock import patch

import pytest

from cdxagent.client import sign_request
from cdxagent.common.auth import (
    AuthenticationGate,
    Decision,
    DenyReason,
    GateConfig,
    RequestView,
    deny_response,
)
from cdxagent.common.settings import Settings

SECRET = "test-secret-key-for-hmac-signature"
NOW = 1_702_800_000


def _view(method="GET", path="/cdx-agent/health", body=b"", headers=None, **kwargs) -> RequestView:
    return RequestView(method=method, path=path, body=body, headers=headers or {}, **kwargs)


def _signed_view(method="GET", path="/cdx-agent/health", body=b"", timestamp=NOW, secret=SECRET):
    headers = sign_request(secret, method, path, body, timestamp=timestamp)
    headers["User-Agent"] = "cdx-ops/1.0"
    return _view(method, path, body, headers, remote_address="203.0.113.7")


class TestEvaluate:
    """Ordered checks and their deny reasons."""

    def test_allows_valid_request(self, gate):
        assert gate.evaluate(_signed_view(), now=NOW) == Decision.allow()

    def test_allows_post_with_body(self, gate):
        view = _signed_view("POST", "/cdx-agent/maintenance", b'{"enabled":true}')
        assert gate.evaluate(view, now=NOW).allowed

    @pytest.mark.parametrize(
        "drop",
        ["X-CDX-Timestamp", "X-CDX-Signature"],
    )
    def test_missing_header(self, gate, drop):
        view = _signed_view()
        headers = {k: v for k, v in view.headers.items() if k != drop}
        decision = gate.evaluate(_view(headers=headers), now=NOW)
        assert decision == Decision.deny(DenyReason.MISSING_HEADERS)

    def test_empty_header_counts_as_missing(self, gate):
        view = _view(headers={"X-CDX-Timestamp": "", "X-CDX-Signature": "abc"})
        assert gate.evaluate(view, now=NOW).reason is DenyReason.MISSING_HEADERS

    def test_missing_headers_never_touches_signature_engine(self, gate):
        with patch("cdxagent.common.auth.SignatureEngine.verify_signature") as verify:
            decision = gate.evaluate(_view(), now=NOW)
        assert decision.reason is DenyReason.MISSING_HEADERS
        verify.assert_not_called()

    def test_secret_not_configured(self):
        gate = AuthenticationGate(GateConfig(secret=""), audit_sinks=[])
        view = _signed_view(secret="some-other-secret")
        decision = gate.evaluate(view, now=NOW)
        assert decision == Decision.deny(DenyReason.SECRET_NOT_CONFIGURED)

    def test_timestamp_out_of_range(self, gate):
        view = _signed_view(timestamp=NOW - 120)
        assert gate.evaluate(view, now=NOW).reason is DenyReason.TIMESTAMP_OUT_OF_RANGE

    def test_future_timestamp_out_of_range(self, gate):
        view = _signed_view(timestamp=NOW + 120)
        assert gate.evaluate(view, now=NOW).reason is DenyReason.TIMESTAMP_OUT_OF_RANGE

    def test_oversized_timestamp_out_of_range(self, gate):
        headers = {"X-CDX-Timestamp": "9" * 5000, "X-CDX-Signature": "a" * 64}
        decision = gate.evaluate(_view(headers=headers), now=NOW)
        assert decision == Decision.deny(DenyReason.TIMESTAMP_OUT_OF_RANGE)

    def test_signature_mismatch(self, gate):
        view = _signed_view(secret="wrong-secret")
        assert gate.evaluate(view, now=NOW).reason is DenyReason.SIGNATURE_MISMATCH

    def test_tampered_body_is_rejected(self, gate):
        view = _signed_view("POST", "/cdx-agent/maintenance", b'{"enabled":true}')
        tampered = _view("POST", view.path, b'{"enabled":false}', view.headers)
        assert gate.evaluate(tampered, now=NOW).reason is DenyReason.SIGNATURE_MISMATCH

    def test_trailing_slash_and_query_are_not_signed(self, gate):
        view = _signed_view(path="/cdx-agent/health")
        variant = _view(path="/cdx-agent/health/", headers=view.headers)
        assert gate.evaluate(variant, now=NOW).allowed

    def test_header_lookup_is_case_insensitive(self, gate):
        view = _signed_view()
        lowered = {k.lower(): v for k, v in view.headers.items()}
        assert gate.evaluate(_view(headers=lowered), now=NOW).allowed

    def test_custom_header_names(self):
        gate = AuthenticationGate(
            GateConfig(secret=SECRET, timestamp_header="X-Ts", signature_header="X-Sig"),
            audit_sinks=[],
        )
        headers = sign_request(
            SECRET,
            "GET",
            "/cdx-agent/health",
            timestamp=NOW,
            timestamp_header="X-Ts",
            signature_header="X-Sig",
        )
        assert gate.evaluate(_view(headers=headers), now=NOW).allowed

    def test_evaluate_does_not_audit(self, gate, audit_sink):
        gate.evaluate(_view(), now=NOW)
        assert audit_sink.events == []


def _authenticate_and_audit(gate: AuthenticationGate, view: RequestView) -> Decision:
    decision = gate.authenticate(view, now=NOW)
    event = gate.audit_event(view, decision)
    if event is not None:
        gate.record_event(event)
    return decision


class TestAudit:
    """Audit events for denied requests."""

    def test_deny_emits_event(self, gate, audit_sink):
        view = _signed_view(timestamp=NOW - 500)
        decision = _authenticate_and_audit(gate, view)

        assert not decision.allowed
        [event] = audit_sink.events
        assert event.reason == "timestamp_out_of_range"
        assert event.remote_address == "203.0.113.7"
        assert event.path == "/cdx-agent/health"
        assert event.method == "GET"
        assert event.timestamp_header == str(NOW - 500)
        assert event.user_agent == "cdx-ops/1.0"

    def test_event_never_contains_secret_or_signature(self, gate, audit_sink):
        view = _signed_view(secret="wrong-secret")
        _authenticate_and_audit(gate, view)

        [event] = audit_sink.events
        rendered = repr(event.to_dict())
        assert SECRET not in rendered
        assert view.header("X-CDX-Signature") not in rendered

    def test_allow_emits_nothing(self, gate, audit_sink):
        view = _signed_view()
        decision = gate.authenticate(view, now=NOW)
        assert decision.allowed
        assert gate.audit_event(view, decision) is None
        assert gate.audit_task(view, decision) is None

    def test_authenticate_alone_does_not_audit(self, gate, audit_sink):
        gate.authenticate(_view(), now=NOW)
        assert audit_sink.events == []

    def test_audit_disabled_skips_request_faults(self, audit_sink):
        gate = AuthenticationGate(
            GateConfig(secret=SECRET, audit_enabled=False),
            audit_sinks=[audit_sink],
        )
        _authenticate_and_audit(gate, _view())
        assert audit_sink.events == []

    def test_missing_secret_always_audited(self, audit_sink):
        gate = AuthenticationGate(
            GateConfig(secret="", audit_enabled=False),
            audit_sinks=[audit_sink],
        )
        _authenticate_and_audit(gate, _signed_view())
        assert [e.reason for e in audit_sink.events] == ["secret_not_configured"]

    def test_failing_sink_does_not_stop_other_sinks(self, audit_sink):
        class BrokenSink:
            def record(self, event):
                raise OSError("disk full")

        gate = AuthenticationGate(
            GateConfig(secret=SECRET),
            audit_sinks=[BrokenSink(), audit_sink],
        )
        decision = _authenticate_and_audit(gate, _view())

        assert decision.reason is DenyReason.MISSING_HEADERS
        assert len(audit_sink.events) == 1

    def test_default_sink_logs_through_structlog(self):
        gate = AuthenticationGate(GateConfig(secret=SECRET))
        assert _authenticate_and_audit(gate, _view()).reason is DenyReason.MISSING_HEADERS

    @pytest.mark.asyncio
    async def test_slow_sink_does_not_delay_decision(self, audit_sink):
        class SlowSink:
            def record(self, event):
                time.sleep(1.0)

        gate = AuthenticationGate(
            GateConfig(secret=SECRET),
            audit_sinks=[SlowSink(), audit_sink],
        )
        view = _view()

        start = time.perf_counter()
        decision = gate.authenticate(view, now=NOW)
        task = gate.audit_task(view, decision)
        assert time.perf_counter() - start < 0.5
        assert audit_sink.events == []

        await task()
        assert [e.reason for e in audit_sink.events] == ["missing_headers"]


class TestConfig:
    def test_from_settings(self):
        settings = Settings(
            secret="abc",
            timestamp_tolerance=30,
            log_failed_attempts=False,
            timestamp_header="X-T",
            signature_header="X-S",
        )
        config = GateConfig.from_settings(settings)

        assert config == GateConfig(
            secret="abc",
            tolerance_seconds=30,
            audit_enabled=False,
            timestamp_header="X-T",
            signature_header="X-S",
        )

    def test_secret_hidden_from_repr(self):
        assert SECRET not in repr(GateConfig(secret=SECRET))

    def test_config_is_immutable(self):
        config = GateConfig(secret=SECRET)
        with pytest.raises(AttributeError):
            config.secret = "other"  # type: ignore[misc]


class TestDenyResponse:
    """Externally visible responses."""

    @pytest.mark.parametrize(
        "reason",
        [
            DenyReason.MISSING_HEADERS,
            DenyReason.TIMESTAMP_OUT_OF_RANGE,
            DenyReason.SIGNATURE_MISMATCH,
        ],
    )
    def test_auth_failures_are_uniform(self, reason):
        response = deny_response(Decision.deny(reason))
        assert response.status_code == 401
        assert response.body == deny_response(Decision.deny(DenyReason.MISSING_HEADERS)).body

    def test_configuration_error_is_distinct(self):
        response = deny_response(Decision.deny(DenyReason.SECRET_NOT_CONFIGURED))
        assert response.status_code == 500
        assert b"agent_not_configured" in response.body
