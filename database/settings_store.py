"""
Settings store persisted in the sync_settings table.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select

from core.settings import SettingsStore
from database.engine import Database
from database.models import SyncSetting

logger = logging.getLogger(__name__)


class DatabaseSettingsStore(SettingsStore):
    """SettingsStore backed by the node's own database."""

    def __init__(self, db: Database):
        self._db = db

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._db.session_scope() as session:
            row = session.get(SyncSetting, key)
            if row is None or row.value is None:
                return default
            return row.value

    def set(self, key: str, value: Any) -> None:
        with self._db.transaction_scope() as session:
            row = session.get(SyncSetting, key)
            if value is None:
                if row is not None:
                    session.delete(row)
                return
            if row is None:
                session.add(SyncSetting(key=key, value=str(value)))
            else:
                row.value = str(value)
        logger.info(f"Setting updated: {key}")

    def all(self) -> Dict[str, str]:
        with self._db.session_scope() as session:
            rows = session.execute(select(SyncSetting)).scalars().all()
            return {row.key: row.value for row in rows if row.value is not None}
