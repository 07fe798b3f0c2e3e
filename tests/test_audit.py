"""Tests for the hash-chained audit log."""

import json
from pathlib import Path

from cdxagent.common.audit import AuthFailureEvent, HashChainedAuditLog


def _event(reason: str = "signature_mismatch") -> AuthFailureEvent:
    return AuthFailureEvent(
        reason=reason,
        remote_address="198.51.100.2",
        path="/cdx-agent/health",
        method="GET",
        timestamp_header="1702800000",
        user_agent="curl/8.0",
    )


class TestHashChainedAuditLog:
    def test_entries_are_chained(self, tmp_path: Path):
        audit = HashChainedAuditLog(str(tmp_path / "audit" / "auth.jsonl"))
        audit.record(_event("missing_headers"))
        audit.record(_event())

        first, second = (json.loads(line) for line in audit.path.read_text().splitlines())
        assert first["prev_hash"] == ""
        assert second["prev_hash"] == first["hash"]
        assert second["reason"] == "signature_mismatch"
        assert audit.verify_chain() == (True, [])

    def test_chain_continues_across_instances(self, tmp_path: Path):
        log_path = str(tmp_path / "auth.jsonl")
        HashChainedAuditLog(log_path).record(_event())
        reopened = HashChainedAuditLog(log_path)
        reopened.record(_event())

        assert reopened.verify_chain() == (True, [])

    def test_tampering_detected(self, tmp_path: Path):
        audit = HashChainedAuditLog(str(tmp_path / "auth.jsonl"))
        for _ in range(3):
            audit.record(_event())

        lines = audit.path.read_text().splitlines()
        entry = json.loads(lines[1])
        entry["remote_address"] = "127.0.0.1"
        lines[1] = json.dumps(entry)
        audit.path.write_text("\n".join(lines) + "\n")

        is_valid, broken = audit.verify_chain()
        assert not is_valid
        assert broken == [2]

    def test_missing_file_is_valid(self, tmp_path: Path):
        audit = HashChainedAuditLog(str(tmp_path / "auth.jsonl"))
        assert audit.verify_chain() == (True, [])
