"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest
from starlette.testclient import TestClient

from cdxagent.agent.main import AgentServer, create_app
from cdxagent.client import sign_request
from cdxagent.common.auth import AuthenticationGate, GateConfig
from cdxagent.common.settings import Settings

TEST_SECRET = "test-secret-key-for-hmac-signature"


class RecordingSink:
    """Audit sink that keeps events in memory."""

    def __init__(self) -> None:
        self.events = []

    def record(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def secret() -> str:
    return TEST_SECRET


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create test settings rooted in a temporary directory."""
    return Settings(
        secret=TEST_SECRET,
        base_path=str(tmp_path),
        maintenance_file="storage/maintenance.json",
        cache_paths=("cache/views",),
        log_file=str(tmp_path / "logs" / "agent.jsonl"),
        rate_limit_rpm=6000.0,
        allowed_commands={"echo": ["echo", "hello"]},
        update_command=["echo", "updated"],
        package_name="cdx-agent-not-a-real-distribution",
    )


@pytest.fixture
def gate_config() -> GateConfig:
    return GateConfig(secret=TEST_SECRET, tolerance_seconds=60)


@pytest.fixture
def audit_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def gate(gate_config: GateConfig, audit_sink: RecordingSink) -> AuthenticationGate:
    return AuthenticationGate(gate_config, audit_sinks=[audit_sink])


@pytest.fixture
def server(settings: Settings) -> AgentServer:
    return AgentServer(settings)


@pytest.fixture
def client(settings: Settings, server: AgentServer):
    """Test client for an app using the test settings."""
    app = create_app(settings, server=server)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signed():
    """Build signed headers for a request."""

    def _signed(method: str, path: str, body: bytes = b"", **kwargs) -> dict[str, str]:
        return sign_request(TEST_SECRET, method, path, body, **kwargs)

    return _signed
