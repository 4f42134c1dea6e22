"""
Core Module - Settings.

============================================================
PURPOSE
============================================================
Key-value settings store plus the typed policy provider that is
injected into the registry, orchestrator, channel and workers.

Resolution order for every recognised key:
    environment variable  >  settings store  >  default

============================================================
RECOGNISED KEYS
============================================================
sync_enabled                           bool  true
sync_incoming_mode                     str   require_approval
sync_incoming_password                 str   (unset)
sync_default_max_records_per_request   int   10000
sync_default_rate_limit_per_minute     int   60
sync_approval_window_hours             int   24
sync_import_max_attempts               int   3
sync_page_size                         int   500
sync_request_timeout_seconds           int   30
sync_session_orphan_hours              int   24
sync_site_url                          str   (unset)

============================================================
"""

import os
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from core.exceptions import ConfigurationError


# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


INCOMING_MODES = ("auto_accept", "require_approval", "require_password", "deny_all")

_TRUE_VALUES = {"1", "true", "yes", "on"}


# ============================================================
# SETTINGS STORE
# ============================================================

class SettingsStore(ABC):
    """Persistent key-value settings collaborator."""

    @abstractmethod
    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def all(self) -> Dict[str, str]:
        pass

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return str(value).strip().lower() in _TRUE_VALUES

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Setting {key} is not an integer: {value!r}",
                config_key=key,
                cause=e,
            ) from e


class InMemorySettingsStore(SettingsStore):
    """Settings held in a dict. Used by tests and one-off CLI runs."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, str] = {
            k: str(v) for k, v in (initial or {}).items()
        }
        self._lock = threading.Lock()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = str(value)

    def all(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._values)


# ============================================================
# SYNC CONFIG
# ============================================================

@dataclass
class SyncConfig:
    """
    Typed view over the recognised settings.

    Passed to components at construction time.
    """

    sync_enabled: bool = True
    """Master switch for serving channel requests."""

    sync_incoming_mode: str = "require_approval"
    """How registration requests from remote sites are handled."""

    sync_incoming_password: Optional[str] = None
    """Password for require_password incoming mode."""

    sync_default_max_records_per_request: int = 10000
    """Per-request record cap for new connections."""

    sync_default_rate_limit_per_minute: int = 60
    """Requests per minute for new connections."""

    sync_approval_window_hours: int = 24
    """Hours a pending_approval transfer waits before expiring."""

    sync_import_max_attempts: int = 3
    """Import worker attempts per job."""

    sync_page_size: int = 500
    """Records fetched per page by the replicator."""

    sync_request_timeout_seconds: int = 30
    """Seconds a channel request waits for its reply."""

    sync_session_orphan_hours: int = 24
    """Age after which owner-less pairing sessions are dropped."""

    sync_site_url: Optional[str] = None
    """This site's public base URL, sent to peers in connection notices."""

    def __post_init__(self):
        if self.sync_incoming_mode not in INCOMING_MODES:
            raise ConfigurationError(
                f"Unknown incoming mode: {self.sync_incoming_mode}",
                config_key="sync_incoming_mode",
            )
        for name in (
            "sync_default_max_records_per_request",
            "sync_default_rate_limit_per_minute",
            "sync_page_size",
            "sync_request_timeout_seconds",
            "sync_import_max_attempts",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", config_key=name)

    @classmethod
    def load(cls, store: Optional[SettingsStore] = None) -> "SyncConfig":
        """
        Build config from environment, then store, then defaults.

        Environment variable names are the upper-cased keys,
        e.g. SYNC_PAGE_SIZE.
        """
        store = store or InMemorySettingsStore()
        values: Dict[str, Any] = {}

        for f in fields(cls):
            raw = os.getenv(f.name.upper())
            if raw is None:
                raw = store.get(f.name)
            if raw is None:
                continue

            if f.type in (bool, "bool"):
                values[f.name] = str(raw).strip().lower() in _TRUE_VALUES
            elif f.type in (int, "int"):
                try:
                    values[f.name] = int(raw)
                except ValueError as e:
                    raise ConfigurationError(
                        f"Setting {f.name} is not an integer: {raw!r}",
                        config_key=f.name,
                        cause=e,
                    ) from e
            else:
                values[f.name] = raw

        config = cls(**values)
        logger.debug(f"Loaded sync config: incoming_mode={config.sync_incoming_mode}")
        return config
