"""
cdx-agent: HMAC-authenticated remote administration agent.

Exposes a small set of operational endpoints (health, maintenance, caches,
logs, whitelisted commands, self-update) that only a control center holding
the shared secret can reach.
"""

__version__ = "1.0.0"
