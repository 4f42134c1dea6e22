"""
Connection Notifier.

============================================================
PURPOSE
============================================================
Keeps the remote half of a connection in step with local
changes. Both sites store the same token hash, so a peer can
name the connection without the plaintext token.

PEER ROUTES (served by ChannelServer):
- POST /sync/connections             register (sender -> receiver)
- POST /sync/connections/status      mirror suspend / reactivate / revoke
- POST /sync/connections/delete      drop the peer's half
- POST /sync/connections/verify      does the peer still have it?
- POST /sync/connections/get-status  receiver asks the sender

PRINCIPLES:
- Notification is best effort: a failed notice never undoes
  the local change
- An unreachable peer is reported as offline, not raised
- Registry events are queued and sent by flush(), so the
  registry stays synchronous

============================================================
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

import aiohttp

from connections.registry import DELETED_EVENT, ConnectionRegistry
from connections.schemas import ConnectionDirection, ConnectionStatus, MIRRORED_STATUSES


logger = logging.getLogger(__name__)


REGISTER_PATH = "/sync/connections"
STATUS_PATH = "/sync/connections/status"
DELETE_PATH = "/sync/connections/delete"
VERIFY_PATH = "/sync/connections/verify"
GET_STATUS_PATH = "/sync/connections/get-status"

DEFAULT_TIMEOUT_SECONDS = 30.0


class NotifyOutcome(str, Enum):
    REGISTERED = "registered"
    PENDING = "pending"
    UPDATED = "updated"
    DELETED = "deleted"
    EXISTS = "exists"
    STATUS = "status"
    NOT_FOUND = "not_found"
    OFFLINE = "offline"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class NotifyResult:
    """What the peer said about one notice."""

    outcome: NotifyOutcome
    connection_id: Optional[int] = None
    http_status: Optional[int] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return self.outcome not in (
            NotifyOutcome.OFFLINE, NotifyOutcome.SKIPPED, NotifyOutcome.FAILED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "connection_id": self.connection_id,
            "http_status": self.http_status,
            "error": self.error,
            "data": self.data,
        }


class ConnectionNotifier:
    """
    HTTP client for the peer maintenance routes.

    Usage:
        notifier = ConnectionNotifier(site_url="https://hq.example")
        notifier.attach(registry)
        registry.suspend(conn, "admin")
        await notifier.flush()
        await notifier.close()
    """

    def __init__(
        self,
        site_url: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._site_url = site_url.rstrip("/") if site_url else None
        self._timeout = timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._outbox: Deque[Tuple[Any, str]] = deque()
        self._outbox_lock = threading.Lock()
        self._stop = asyncio.Event()

    @property
    def site_url(self) -> Optional[str]:
        return self._site_url

    @property
    def pending(self) -> int:
        with self._outbox_lock:
            return len(self._outbox)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # =========================================================
    # REGISTRY EVENTS
    # =========================================================

    def attach(self, registry: ConnectionRegistry) -> None:
        """Queue a notice for every local status change and delete."""
        registry.add_listener(self.enqueue)

    def enqueue(self, connection: Any, event: str) -> None:
        """Registry listener. Safe to call from worker threads."""
        if event != DELETED_EVENT and event not in {s.value for s in MIRRORED_STATUSES}:
            return
        with self._outbox_lock:
            self._outbox.append((connection, event))

    async def flush(self) -> List[NotifyResult]:
        """Send every queued notice, oldest first."""
        results = []
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    break
                connection, event = self._outbox.popleft()
            if event == DELETED_EVENT:
                results.append(await self.notify_delete(connection))
            else:
                results.append(await self.notify_status_change(connection, event))
        return results

    async def run_forever(self, interval_seconds: float = 1.0) -> None:
        """Flush on a fixed interval until stop() is called."""
        self._stop.clear()
        logger.info(f"Connection notifier started (interval={interval_seconds}s)")
        while not self._stop.is_set():
            await self.flush()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        await self.flush()
        logger.info("Connection notifier stopped")

    def stop(self) -> None:
        self._stop.set()

    # =========================================================
    # NOTICES
    # =========================================================

    async def notify_remote_site(
        self,
        connection: Any,
        token: str,
        password: Optional[str] = None,
    ) -> NotifyResult:
        """
        Ask the peer to register the receiver half of a new sender
        connection. Only the creator holds the plaintext token, so
        this can only happen right after create().
        """
        if connection.direction != ConnectionDirection.SENDER.value:
            return NotifyResult(NotifyOutcome.SKIPPED, connection.id, error="not a sender connection")
        if not self._site_url:
            return NotifyResult(NotifyOutcome.SKIPPED, connection.id, error="sync_site_url not configured")

        body = {
            "name": connection.name,
            "site_url": self._site_url,
            "direction": ConnectionDirection.RECEIVER.value,
            "auth_token": token,
        }
        if password:
            body["password"] = password

        status, data, error = await self._post(connection.site_url, REGISTER_PATH, body)
        if status == 201:
            remote_status = (data.get("connection") or {}).get("status")
            outcome = (
                NotifyOutcome.PENDING if remote_status == ConnectionStatus.PENDING.value
                else NotifyOutcome.REGISTERED
            )
            logger.info(f"Connection {connection.id} registered at {connection.site_url} ({remote_status})")
            return NotifyResult(outcome, connection.id, status, data=data)
        return self._failed(connection, status, data, error)

    async def notify_status_change(self, connection: Any, status: str) -> NotifyResult:
        """Tell the peer to mirror ``status`` (active, suspended, revoked)."""
        body = self._ref_body(connection)
        if body is None:
            return NotifyResult(NotifyOutcome.SKIPPED, connection.id, error="sync_site_url not configured")
        body["status"] = status

        code, data, error = await self._post(connection.site_url, STATUS_PATH, body)
        if code == 200:
            logger.info(f"Connection {connection.id}: peer mirrored status {status}")
            return NotifyResult(NotifyOutcome.UPDATED, connection.id, code, data=data)
        return self._failed(connection, code, data, error)

    async def notify_delete(self, connection: Any) -> NotifyResult:
        body = self._ref_body(connection)
        if body is None:
            return NotifyResult(NotifyOutcome.SKIPPED, connection.id, error="sync_site_url not configured")

        code, data, error = await self._post(connection.site_url, DELETE_PATH, body)
        if code == 200:
            logger.info(f"Connection {connection.id}: peer deleted its half")
            return NotifyResult(NotifyOutcome.DELETED, connection.id, code, data=data)
        return self._failed(connection, code, data, error)

    async def verify_connection(self, connection: Any) -> NotifyResult:
        """EXISTS or NOT_FOUND; a sender drops a connection its receiver lost."""
        body = self._ref_body(connection)
        if body is None:
            return NotifyResult(NotifyOutcome.SKIPPED, connection.id, error="sync_site_url not configured")

        code, data, error = await self._post(connection.site_url, VERIFY_PATH, body)
        if code == 200:
            return NotifyResult(NotifyOutcome.EXISTS, connection.id, code, data=data)
        return self._failed(connection, code, data, error)

    async def query_sender_status(self, connection: Any) -> NotifyResult:
        """Receiver side: read the sender's status for this connection."""
        body = self._ref_body(connection)
        if body is None:
            return NotifyResult(NotifyOutcome.SKIPPED, connection.id, error="sync_site_url not configured")

        code, data, error = await self._post(connection.site_url, GET_STATUS_PATH, body)
        if code == 200:
            return NotifyResult(NotifyOutcome.STATUS, connection.id, code, data=data)
        return self._failed(connection, code, data, error)

    # =========================================================
    # HTTP
    # =========================================================

    def _ref_body(self, connection: Any) -> Optional[Dict[str, Any]]:
        if not self._site_url:
            return None
        return {"site_url": self._site_url, "auth_token_hash": connection.auth_token_hash}

    async def _post(
        self,
        peer_url: str,
        path: str,
        body: Dict[str, Any],
    ) -> Tuple[Optional[int], Dict[str, Any], Optional[str]]:
        """Returns (http status, json body, transport error)."""
        url = f"{peer_url.rstrip('/')}{path}"
        try:
            session = await self._get_session()
            async with session.post(url, json=body) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {}
                return response.status, data if isinstance(data, dict) else {}, None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Peer {peer_url} unreachable: {e}")
            return None, {}, str(e) or type(e).__name__

    @staticmethod
    def _failed(
        connection: Any,
        status: Optional[int],
        data: Dict[str, Any],
        error: Optional[str],
    ) -> NotifyResult:
        if status is None:
            return NotifyResult(NotifyOutcome.OFFLINE, connection.id, error=error)
        if status == 404:
            return NotifyResult(NotifyOutcome.NOT_FOUND, connection.id, status, data=data)
        reason = data.get("error") or f"http_{status}"
        logger.warning(f"Connection {connection.id}: peer answered {status} ({reason})")
        return NotifyResult(NotifyOutcome.FAILED, connection.id, status, error=reason, data=data)
