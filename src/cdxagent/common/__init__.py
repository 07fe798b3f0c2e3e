"""Common utilities for cdx-agent."""

from cdxagent.common.hmac import SignatureEngine, build_payload, canonical_path, hash_body
from cdxagent.common.replay import is_timestamp_valid
from cdxagent.common.settings import Settings, get_settings

__all__ = [
    "Settings",
    "SignatureEngine",
    "build_payload",
    "canonical_path",
    "get_settings",
    "hash_body",
    "is_timestamp_valid",
]
