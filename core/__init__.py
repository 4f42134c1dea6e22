"""
Core Module Package.

Infrastructure shared by every replication component.

Components:
- clock: Injectable UTC time source
- exceptions: Exception hierarchy with reason codes
- settings: Settings store and SyncConfig policy provider
"""

from core.clock import ClockProtocol, SystemClock, MockClock, get_clock
from core.settings import SettingsStore, InMemorySettingsStore, SyncConfig

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "get_clock",
    "SettingsStore",
    "InMemorySettingsStore",
    "SyncConfig",
]
