"""
Database persistence layer.

Engine/session management and the ORM models for the engine's
own bookkeeping tables.
"""

from database.engine import Database, get_database, get_database_url
from database.models import Base, SyncConnection, SyncTransfer, SyncSetting
from database.settings_store import DatabaseSettingsStore

__all__ = [
    "Database",
    "get_database",
    "get_database_url",
    "Base",
    "SyncConnection",
    "SyncTransfer",
    "SyncSetting",
    "DatabaseSettingsStore",
]
