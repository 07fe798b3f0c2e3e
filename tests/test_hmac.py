"""Tests for request signing and verification."""

import hashlib

import pytest

from cdxagent.common.hmac import (
    SignatureEngine,
    build_payload,
    canonical_path,
    constant_time_equals,
    hash_body,
    sign,
    verify,
)

SECRET = "test-secret-key-for-hmac-signature"
EMPTY_BODY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestPayload:
    """Canonical payload construction."""

    def test_empty_body_hash(self):
        assert hash_body(b"") == EMPTY_BODY_SHA256
        assert hash_body("") == EMPTY_BODY_SHA256

    def test_payload_layout(self):
        payload = build_payload("1702800000", "get", "/cdx-agent/health", b"")
        assert payload == f"1702800000\nGET\n/cdx-agent/health\n{EMPTY_BODY_SHA256}".encode()

    def test_payload_hashes_body(self):
        body = b'{"enabled":true}'
        payload = build_payload("1", "POST", "/cdx-agent/maintenance", body)
        assert payload.endswith(hashlib.sha256(body).hexdigest().encode())

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("/cdx-agent/health", "/cdx-agent/health"),
            ("/cdx-agent/health/", "/cdx-agent/health"),
            ("cdx-agent/health", "/cdx-agent/health"),
            ("/cdx-agent/logs?lines=10&level=error", "/cdx-agent/logs"),
            ("/", "/"),
            ("", "/"),
        ],
    )
    def test_canonical_path(self, raw, expected):
        assert canonical_path(raw) == expected


class TestSignatureEngine:
    """Signing and verification."""

    def test_generates_hex_signature(self):
        engine = SignatureEngine(SECRET)
        signature = engine.generate_signature("1702800000", "GET", "/cdx-agent/health", "")

        assert len(signature) == 64
        assert signature == signature.lower()
        int(signature, 16)

    def test_golden_signature(self):
        """Regression anchor shared with signing clients."""
        engine = SignatureEngine("cdx-ops-shared-secret")
        signature = engine.generate_signature("1702800000", "GET", "/cdx-agent/health", "")

        assert signature == "e259b10f62f2d00ddc6e7103c76064bfb414d0d69cf6f6d0a4098fa3b6a79a57"

    def test_verifies_valid_signature(self):
        engine = SignatureEngine(SECRET)
        body = '{"enabled":true}'
        signature = engine.generate_signature("1702800000", "POST", "/cdx-agent/maintenance", body)

        assert engine.verify_signature(
            signature, "1702800000", "POST", "/cdx-agent/maintenance", body
        )

    def test_str_and_bytes_inputs_agree(self):
        engine = SignatureEngine(SECRET.encode())
        as_str = SignatureEngine(SECRET).generate_signature("1", "POST", "/p", '{"a":1}')
        as_bytes = engine.generate_signature("1", "POST", "/p", b'{"a":1}')
        assert as_str == as_bytes

    def test_rejects_invalid_signature(self):
        engine = SignatureEngine(SECRET)
        assert not engine.verify_signature(
            "invalid-signature-that-should-fail",
            "1702800000",
            "POST",
            "/cdx-agent/maintenance",
            '{"enabled":true}',
        )

    def test_rejects_non_ascii_candidate(self):
        engine = SignatureEngine(SECRET)
        assert not engine.verify_signature("é" * 64, "1", "GET", "/", b"")

    def test_rejects_tampered_body(self):
        engine = SignatureEngine(SECRET)
        signature = engine.generate_signature(
            "1702800000", "POST", "/cdx-agent/maintenance", '{"enabled":true}'
        )

        assert not engine.verify_signature(
            signature, "1702800000", "POST", "/cdx-agent/maintenance", '{"enabled":false}'
        )

    @pytest.mark.parametrize(
        "changed",
        [
            {"timestamp": "1702800001"},
            {"method": "POST"},
            {"path": "/cdx-agent/logs"},
            {"body": b"x"},
        ],
    )
    def test_any_field_change_breaks_signature(self, changed):
        engine = SignatureEngine(SECRET)
        original = {
            "timestamp": "1702800000",
            "method": "GET",
            "path": "/cdx-agent/health",
            "body": b"",
        }
        signature = engine.generate_signature(**original)
        modified = {**original, **changed}

        assert engine.generate_signature(**modified) != signature
        assert not engine.verify_signature(signature, **modified)

    def test_method_is_case_insensitive(self):
        engine = SignatureEngine(SECRET)
        lower = engine.generate_signature("1702800000", "get", "/cdx-agent/health", "")
        upper = engine.generate_signature("1702800000", "GET", "/cdx-agent/health", "")
        assert lower == upper

    def test_different_secrets_produce_different_signatures(self):
        first = SignatureEngine("secret-1").generate_signature("1702800000", "GET", "/h", "")
        second = SignatureEngine("secret-2").generate_signature("1702800000", "GET", "/h", "")
        assert first != second

    def test_verify_fails_without_secret(self):
        signature = sign(b"", build_payload("1", "GET", "/", b""))
        engine = SignatureEngine("")

        assert not engine.has_secret
        assert not engine.verify_signature(signature, "1", "GET", "/", b"")


class TestHelpers:
    """Module-level helpers."""

    def test_verify_round_trip(self):
        payload = build_payload("1702800000", "GET", "/cdx-agent/health")
        assert verify(SECRET, payload, sign(SECRET, payload))
        assert not verify("other", payload, sign(SECRET, payload))

    def test_constant_time_equals_handles_length_mismatch(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abcd")
        assert not constant_time_equals("abc", "")
