"""cdx-agent server - administrative operations behind the HMAC gate."""

from cdxagent.agent.backups import BackupMonitor
from cdxagent.agent.caches import CacheRegistry
from cdxagent.agent.commands import CommandRunner, SelfUpdater
from cdxagent.agent.logs import LogReader
from cdxagent.agent.system import MaintenanceMode

__all__ = [
    "BackupMonitor",
    "CacheRegistry",
    "CommandRunner",
    "LogReader",
    "MaintenanceMode",
    "SelfUpdater",
]
