"""
Maintenance Sweeper.

One pass:
- pending_approval transfers past their deadline -> expired
- active connections past expiry or over a quota -> expired
- pairing sessions whose owner is gone, or owner-less sessions
  older than sync_session_orphan_hours -> removed

Every step is a conditional update, so passes can overlap each
other and live transfers.
"""

import asyncio
import logging
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from connections.registry import ConnectionRegistry
from core.exceptions import SyncException
from core.settings import SyncConfig
from pairing.broker import SessionBroker
from transfers.orchestrator import TransferOrchestrator


logger = logging.getLogger(__name__)


class Sweeper:
    """Periodic expiry jobs."""

    def __init__(
        self,
        orchestrator: TransferOrchestrator,
        registry: ConnectionRegistry,
        broker: Optional[SessionBroker] = None,
        config: Optional[SyncConfig] = None,
    ):
        self._orchestrator = orchestrator
        self._registry = registry
        self._broker = broker
        self._config = config or SyncConfig()
        self._stop = asyncio.Event()
        self._passes = 0

    @property
    def passes(self) -> int:
        return self._passes

    def run_once(self) -> Dict[str, int]:
        counts = {
            "expired_approvals": self._orchestrator.expire_pending_approvals(),
            "expired_connections": self._registry.expire_connections(),
            "orphaned_sessions": 0,
        }
        if self._broker is not None:
            counts["orphaned_sessions"] = self._broker.cleanup_orphaned(
                self._config.sync_session_orphan_hours
            )

        self._passes += 1
        if any(counts.values()):
            logger.info(f"Sweep: {counts}")
        return counts

    async def run_forever(self, interval_seconds: float = 60.0) -> None:
        """Sweep every ``interval_seconds`` until stop() is called."""
        self._stop.clear()
        logger.info(f"Sweeper started (every {interval_seconds}s)")
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except (SyncException, SQLAlchemyError) as e:
                logger.error(f"Sweep failed, next pass in {interval_seconds}s: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Sweeper stopped")

    def stop(self) -> None:
        self._stop.set()
