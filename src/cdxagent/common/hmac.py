"""HMAC signing utilities for control-center requests.

Canonical payload (must be reproduced bit-exact by every signing client)::

    {timestamp}\\n{UPPERCASE_METHOD}\\n{canonical_path}\\n{hex(SHA256(body))}
"""

from __future__ import annotations

import hashlib
import hmac


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def canonical_path(path: str) -> str:
    """Reduce a request path to the form covered by the signature.

    The query string is dropped and leading/trailing slashes are collapsed,
    so ``/cdx-agent/health/?x=1`` signs as ``/cdx-agent/health``.

    The path is signed in its percent-decoded form, the way the server sees
    it in ``request.url.path``: ``/files/caf%C3%A9`` must be signed as
    ``/files/café``. No decoding happens here.
    """
    path = path.split("?", 1)[0].split("#", 1)[0]
    return "/" + path.strip("/")


def hash_body(body: str | bytes) -> str:
    """Hex-encoded SHA-256 of the raw request body."""
    return hashlib.sha256(_to_bytes(body)).hexdigest()


def build_payload(timestamp: str, method: str, path: str, body: str | bytes = b"") -> bytes:
    """Build the canonical payload that gets signed."""
    return "\n".join(
        [
            timestamp,
            method.upper(),
            path,
            hash_body(body),
        ]
    ).encode("utf-8")


def sign(secret: str | bytes, payload: bytes) -> str:
    """Create a hex-encoded HMAC-SHA256 signature."""
    return hmac.new(_to_bytes(secret), payload, hashlib.sha256).hexdigest()


def constant_time_equals(expected: str, candidate: str) -> bool:
    """Compare two signatures without leaking mismatch position or length."""
    # Digesting first gives compare_digest equal-length inputs.
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    candidate_digest = hashlib.sha256(candidate.encode("utf-8", "surrogatepass")).digest()
    return hmac.compare_digest(expected_digest, candidate_digest)


def verify(secret: str | bytes, payload: bytes, signature: str) -> bool:
    """Verify HMAC signature in constant time."""
    return constant_time_equals(sign(secret, payload), signature)


class SignatureEngine:
    """Computes and verifies request signatures for one shared secret."""

    def __init__(self, secret: str | bytes) -> None:
        self._secret = _to_bytes(secret or b"")

    @property
    def has_secret(self) -> bool:
        return bool(self._secret)

    def generate_signature(
        self,
        timestamp: str,
        method: str,
        path: str,
        body: str | bytes = b"",
    ) -> str:
        """
        Sign a request.

        Args:
            timestamp: Decimal seconds since the Unix epoch, as sent on the wire
            method: HTTP method, any case
            path: Absolute request path
            body: Raw request body

        Returns:
            Lowercase 64-character hex digest
        """
        return sign(self._secret, build_payload(timestamp, method, path, body))

    def verify_signature(
        self,
        candidate: str,
        timestamp: str,
        method: str,
        path: str,
        body: str | bytes = b"",
    ) -> bool:
        """Check a candidate signature against the expected one.

        Always False when no secret is configured.
        """
        if not self._secret:
            return False
        expected = self.generate_signature(timestamp, method, path, body)
        return constant_time_equals(expected, candidate)
